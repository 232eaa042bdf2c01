"""
Compatibility predicates used by both matching algorithms.

Pure functions over Home / Search / SearchZone / Intent objects; no
database access, so they can be unit tested with plain instances.
Numeric bounds that are None are unbounded; an empty list of accepted
home types accepts any type; a search without a valid zone accepts any
location.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

EARTH_RADIUS_M = 6_371_000

# Bounding-box pre-filter: radius in km / ~111 km per degree, plus a margin
KM_PER_DEGREE = 111
BBOX_MARGIN_DEGREES = 0.5

# Open-ended search windows extend this far into the future
OPEN_END_YEARS = 10

DEFAULT_EDGE_SCORE = 50.0


# ── Geography ──────────────────────────────────────────────────────────────

def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def valid_zones(zones) -> list:
    """Zones with a center and a positive radius."""
    return [
        z for z in (zones or [])
        if z.lat is not None and z.lng is not None and z.radius is not None and z.radius > 0
    ]


def location_in_zones(lat: float | None, lng: float | None, zones) -> bool:
    """
    True if (lat, lng) lies within at least one zone.

    With no valid zone the search is location-agnostic and this returns
    True; with zones but no coordinates it returns False.
    """
    usable = valid_zones(zones)
    if not usable:
        return True
    if lat is None or lng is None:
        return False
    return any(haversine_m(lat, lng, z.lat, z.lng) <= z.radius for z in usable)


def zone_bounding_boxes(zones) -> list[tuple[float, float, float, float]]:
    """
    Coarse (min_lat, max_lat, min_lng, max_lng) boxes, one per zone.

    Used as a SQL pre-filter; the exact test is ``location_in_zones``.
    """
    boxes = []
    for z in valid_zones(zones):
        delta = z.radius / 1000 / KM_PER_DEGREE + BBOX_MARGIN_DEGREES
        boxes.append((z.lat - delta, z.lat + delta, z.lng - delta, z.lng + delta))
    return boxes


# ── Home vs search ─────────────────────────────────────────────────────────

def _within(value, lower, upper) -> bool:
    if lower is None and upper is None:
        return True
    if value is None:
        return False
    if lower is not None and value < lower:
        return False
    if upper is not None and value > upper:
        return False
    return True


def home_type_accepted(home_type: str | None, accepted: list | None) -> bool:
    if not accepted:
        return True
    return home_type is not None and home_type in accepted


def dwelling_rejection(home, search) -> str | None:
    """Return the first criterion *home* fails against *search*, or None."""
    if home is None or search is None:
        return "missing_home_or_search"
    if not _within(home.rent, search.min_rent, search.max_rent):
        return "rent"
    if not _within(home.surface, search.min_room_surface, search.max_room_surface):
        return "surface"
    if not _within(home.nb_rooms, search.min_room_nb, search.max_room_nb):
        return "rooms"
    if not home_type_accepted(home.home_type, search.home_types):
        return "home_type"
    return None


def dwelling_satisfies_search(home, search) -> bool:
    return dwelling_rejection(home, search) is None


def home_in_search_zones(home, search) -> bool:
    if home is None or search is None:
        return False
    return location_in_zones(home.lat, home.lng, search.zones)


# ── Dates ──────────────────────────────────────────────────────────────────

def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def resolve_window(start, end, now: datetime) -> tuple[datetime, datetime]:
    """Open start means now; open end means now + 10 years."""
    resolved_start = _as_aware(start) if start is not None else now
    resolved_end = (
        _as_aware(end) if end is not None
        else now + timedelta(days=365 * OPEN_END_YEARS)
    )
    return resolved_start, resolved_end


def tolerance_for(start: datetime, end: datetime, fraction: float, min_days: int) -> timedelta:
    """``fraction`` of the window length, floored at ``min_days``."""
    duration_days = max((end - start).total_seconds(), 0) / 86400
    return timedelta(days=max(duration_days * fraction, min_days))


def date_windows_overlap(
    search_a,
    search_b,
    *,
    fraction: float = 0.0,
    min_days: int = 0,
    now: datetime | None = None,
) -> bool:
    """
    True if the two searches' validity windows intersect.

    Each window is widened on both sides by its own tolerance before the
    intersection test.  With the default fraction of 0 the test is a
    strict overlap.
    """
    now = now or datetime.now(timezone.utc)
    start_a, end_a = resolve_window(search_a.search_start_date, search_a.search_end_date, now)
    start_b, end_b = resolve_window(search_b.search_start_date, search_b.search_end_date, now)

    tol_a = tolerance_for(start_a, end_a, fraction, min_days)
    tol_b = tolerance_for(start_b, end_b, fraction, min_days)

    return (start_a - tol_a) <= (end_b + tol_b) and (start_b - tol_b) <= (end_a + tol_a)


# ── Intents ────────────────────────────────────────────────────────────────

def is_intent_eligible(intent) -> bool:
    """In flow, at least one credit, and linked to a home and a search."""
    if intent is None:
        return False
    return (
        bool(intent.is_in_flow)
        and (intent.total_matches_remaining or 0) > 0
        and intent.home_id is not None
        and intent.search_id is not None
    )


# ── Edge scoring ───────────────────────────────────────────────────────────

def rent_proximity_score(home, search) -> float:
    """
    Default triangle edge score: closer to the seeker's max rent is better.

    ``100 - |rent - max_rent|``; 50 when either value is unknown.
    """
    if home is None or search is None or home.rent is None or search.max_rent is None:
        return DEFAULT_EDGE_SCORE
    return float(100 - abs(home.rent - search.max_rent))
