"""
Standard (2-party) matching algorithm.

For one seeker intent:

1. Fetch candidate intents with one filtered query on the seeker's rent /
   surface / room / type bounds, a bounding box around the seeker's
   zones, excluding the seeker's own home and homes it already matched.
2. Evaluate reciprocal compatibility in a fixed short-circuit order
   (``evaluate_pair``).
3. Commit each passing pair in its own transaction: re-verify credits,
   check for duplicates, draw one FIFO credit per party, create two
   Match rows sharing a group id, debit both intents, stage two outbox
   rows.  A rejected commit rolls back and the loop moves on.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from app.matching_engine import criteria
from app.matching_engine.config import REPAIR_BATCH_SIZE, MatchingConfig
from app.matching_engine.credit_ledger import consume_payment_credit, decrement_intent_credits
from app.matching_engine.exceptions import (
    DuplicateMatchError,
    InsufficientCreditsError,
    IntentNotEligibleError,
    MatchRejectedError,
)
from app.matching_engine.outbox import write_outbox_entry
from app.models.home import Home
from app.models.intent import Intent
from app.models.match import Match, MatchType
from app.models.search import Search, SearchZone

logger = logging.getLogger(__name__)


def with_profile(query):
    """Eager-load what the predicates read (home, search + zones)."""
    return query.options(
        selectinload(Intent.home),
        selectinload(Intent.search).selectinload(Search.zones),
    )


def eligible_intent_conditions() -> list:
    return [
        Intent.is_in_flow.is_(True),
        Intent.total_matches_remaining > 0,
        Intent.home_id.is_not(None),
        Intent.search_id.is_not(None),
    ]


def home_conditions_for_search(search) -> list:
    """SQL pre-filter on ``Home`` columns for the bounds of *search*."""
    conditions = []
    bounds = (
        (Home.rent, search.min_rent, search.max_rent),
        (Home.surface, search.min_room_surface, search.max_room_surface),
        (Home.nb_rooms, search.min_room_nb, search.max_room_nb),
    )
    for column, lower, upper in bounds:
        if lower is not None:
            conditions.append(column >= lower)
        if upper is not None:
            conditions.append(column <= upper)

    if search.home_types:
        conditions.append(Home.home_type.in_(search.home_types))

    boxes = criteria.zone_bounding_boxes(search.zones)
    if boxes:
        conditions.append(or_(*[
            and_(
                Home.lat.between(min_lat, max_lat),
                Home.lng.between(min_lng, max_lng),
            )
            for min_lat, max_lat, min_lng, max_lng in boxes
        ]))
    return conditions


def _valid_zone_of_search() -> list:
    return [
        SearchZone.search_id == Search.id,
        SearchZone.lat.is_not(None),
        SearchZone.lng.is_not(None),
        SearchZone.radius > 0,
    ]


def search_conditions_for_home(home) -> list:
    """
    SQL pre-filter on ``Search`` columns: searches *home* may satisfy.

    Mirror of ``home_conditions_for_search``.  Zone containment is
    narrowed to a bounding box around each zone; searches without a
    valid zone accept any location.
    """
    conditions = []
    for lower, upper, value in (
        (Search.min_rent, Search.max_rent, home.rent),
        (Search.min_room_surface, Search.max_room_surface, home.surface),
        (Search.min_room_nb, Search.max_room_nb, home.nb_rooms),
    ):
        if value is None:
            conditions.extend([lower.is_(None), upper.is_(None)])
        else:
            conditions.append(or_(lower.is_(None), lower <= value))
            conditions.append(or_(upper.is_(None), upper >= value))

    any_type = or_(Search.home_types.is_(None), Search.home_types == [])
    if home.home_type is None:
        conditions.append(any_type)
    else:
        conditions.append(or_(any_type, Search.home_types.contains([home.home_type])))

    anywhere = ~exists().where(*_valid_zone_of_search())
    if home.lat is None or home.lng is None:
        conditions.append(anywhere)
    else:
        delta = SearchZone.radius / 1000.0 / criteria.KM_PER_DEGREE + criteria.BBOX_MARGIN_DEGREES
        near = exists().where(
            *_valid_zone_of_search(),
            SearchZone.lat - delta <= home.lat,
            SearchZone.lat + delta >= home.lat,
            SearchZone.lng - delta <= home.lng,
            SearchZone.lng + delta >= home.lng,
        )
        conditions.append(or_(anywhere, near))
    return conditions


class StandardMatcher:
    """Creates reciprocal STANDARD matches for one seeker at a time."""

    def __init__(self, session_factory=None, config: MatchingConfig | None = None):
        self._session_factory = session_factory
        self._config = config

    @property
    def session_factory(self):
        if self._session_factory is not None:
            return self._session_factory
        from app.database import async_session
        return async_session

    @property
    def config(self) -> MatchingConfig:
        if self._config is not None:
            return self._config
        from app.matching_engine.config import matching_config
        return matching_config

    # ── Public entry point ───────────────────────────────────────────────

    async def run_for_intent(self, intent_id, run_id: str) -> int:
        """
        Create as many STANDARD matches as the seeker's credits allow.

        Returns the number of match pairs created.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                with_profile(select(Intent).where(Intent.id == intent_id))
            )
            seeker = result.scalar_one_or_none()
            if seeker is None:
                logger.warning("Standard matching: intent %s not found", intent_id)
                return 0
            if not criteria.is_intent_eligible(seeker):
                logger.debug("Standard matching: intent %s not eligible", intent_id)
                return 0

            candidates = await self._fetch_candidates(session, seeker)

        remaining = seeker.total_matches_remaining
        created = 0
        logger.debug(
            "Standard matching: seeker %s has %d candidate(s), %d credit(s)",
            seeker.id, len(candidates), remaining,
        )

        for candidate in candidates:
            reason = self.evaluate_pair(seeker, candidate)
            if reason is not None:
                continue

            if await self.commit_match(seeker.id, candidate.id, run_id):
                created += 1
                remaining -= 1
                if remaining <= 0:
                    break

        if created:
            logger.info(
                "Standard matching: seeker %s got %d match(es) (run=%s)",
                seeker.id, created, run_id,
            )
        return created

    # ── Candidate query ──────────────────────────────────────────────────

    async def _fetch_candidates(self, session, seeker: Intent) -> list[Intent]:
        conditions = [
            Intent.id != seeker.id,
            Intent.user_id != seeker.user_id,
            *eligible_intent_conditions(),
            Home.user_id != seeker.user_id,
            Home.id.not_in(
                select(Match.target_home_id).where(Match.seeker_intent_id == seeker.id)
            ),
            *home_conditions_for_search(seeker.search),
        ]

        query = (
            select(Intent)
            .join(Home, Intent.home_id == Home.id)
            .where(*conditions)
            .order_by(Intent.created_at.asc())
            .limit(self.config.candidate_limit)
        )
        result = await session.execute(with_profile(query))
        return list(result.scalars().unique().all())

    # ── Reciprocal evaluation ────────────────────────────────────────────

    def evaluate_pair(self, seeker: Intent, target: Intent, now: datetime | None = None) -> str | None:
        """
        Check reciprocal compatibility; return the first failed step or None.

        Order: seeker eligible → target eligible → target home vs seeker
        search → target home in seeker zones → date overlap → seeker home
        vs target search → seeker home in target zones.  For a traced pair
        every step is logged as it is decided.
        """
        traced = self.config.is_traced_pair(seeker.user_id, target.user_id)
        for step, reason in self._checks(seeker, target, now):
            if traced:
                logger.info(
                    "TRACE standard %s -> %s: %s %s",
                    seeker.user_id, target.user_id, step, reason or "ok",
                )
            if reason is not None:
                return reason
        if traced:
            logger.info("TRACE standard %s -> %s: compatible", seeker.user_id, target.user_id)
        return None

    def _checks(self, seeker: Intent, target: Intent, now: datetime | None):
        """Yield ``(step, rejection or None)`` lazily, in evaluation order."""
        yield "seeker_eligible", (None if criteria.is_intent_eligible(seeker) else "seeker_not_eligible")
        yield "target_eligible", (None if criteria.is_intent_eligible(target) else "target_not_eligible")

        failed = criteria.dwelling_rejection(target.home, seeker.search)
        yield "target_home_criteria", (f"target_home_{failed}" if failed else None)
        in_zones = criteria.home_in_search_zones(target.home, seeker.search)
        yield "target_home_zones", (None if in_zones else "target_home_outside_zones")

        overlap = criteria.date_windows_overlap(
            seeker.search,
            target.search,
            fraction=self.config.date_tolerance_fraction,
            min_days=self.config.date_tolerance_min_days,
            now=now,
        )
        yield "dates", (None if overlap else "dates")

        failed = criteria.dwelling_rejection(seeker.home, target.search)
        yield "seeker_home_criteria", (f"seeker_home_{failed}" if failed else None)
        in_zones = criteria.home_in_search_zones(seeker.home, target.search)
        yield "seeker_home_zones", (None if in_zones else "seeker_home_outside_zones")

    # ── Commit ───────────────────────────────────────────────────────────

    async def commit_match(self, seeker_id, target_id, run_id: str) -> bool:
        """
        Atomically create a STANDARD pair; False if the commit was rejected.

        Credit, duplicate and eligibility problems are expected under
        concurrency and are logged at DEBUG.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    group_id = await self._commit_in_session(session, seeker_id, target_id, run_id)
        except MatchRejectedError as exc:
            logger.debug("Standard match %s <-> %s rejected: %s", seeker_id, target_id, exc)
            return False
        except IntegrityError as exc:
            logger.debug(
                "Standard match %s <-> %s hit a unique constraint: %s",
                seeker_id, target_id, exc.orig,
            )
            return False

        logger.info(
            "STANDARD match created: %s <-> %s group=%s run=%s",
            seeker_id, target_id, group_id, run_id,
        )
        return True

    async def _commit_in_session(self, session, seeker_id, target_id, run_id: str) -> uuid.UUID:
        # Lock both intents in a stable order
        result = await session.execute(
            select(Intent)
            .where(Intent.id.in_([seeker_id, target_id]))
            .order_by(Intent.id)
            .with_for_update()
        )
        locked = {intent.id: intent for intent in result.scalars().all()}
        seeker = locked.get(seeker_id)
        target = locked.get(target_id)
        if seeker is None or target is None:
            raise IntentNotEligibleError("intent not found")
        for intent in (seeker, target):
            if not intent.is_in_flow or intent.home_id is None or intent.search_id is None:
                raise IntentNotEligibleError(f"intent {intent.id} left the flow")
            if intent.total_matches_remaining <= 0:
                raise InsufficientCreditsError(f"intent {intent.id} has no credits")

        duplicate = await session.execute(
            select(Match.id)
            .where(or_(
                and_(Match.seeker_intent_id == seeker.id, Match.target_home_id == target.home_id),
                and_(Match.seeker_intent_id == target.id, Match.target_home_id == seeker.home_id),
            ))
            .limit(1)
        )
        if duplicate.scalar_one_or_none() is not None:
            raise DuplicateMatchError(f"{seeker.id} <-> {target.id} already matched")

        await consume_payment_credit(session, seeker.user_id, seeker.id)
        await consume_payment_credit(session, target.user_id, target.id)

        seeker_home = await session.get(Home, seeker.home_id)
        target_home = await session.get(Home, target.home_id)

        group_id = uuid.uuid4()
        forward = Match(
            group_id=group_id,
            seeker_intent_id=seeker.id,
            target_intent_id=target.id,
            target_home_id=target.home_id,
            type=MatchType.STANDARD,
            snapshot=target_home.snapshot() if target_home else None,
        )
        backward = Match(
            group_id=group_id,
            seeker_intent_id=target.id,
            target_intent_id=seeker.id,
            target_home_id=seeker.home_id,
            type=MatchType.STANDARD,
            snapshot=seeker_home.snapshot() if seeker_home else None,
        )
        session.add_all([forward, backward])
        await session.flush()

        await decrement_intent_credits(session, seeker.id)
        await decrement_intent_credits(session, target.id)

        for intent, match in ((seeker, forward), (target, backward)):
            await write_outbox_entry(
                session,
                run_id=run_id,
                user_id=intent.user_id,
                intent_id=intent.id,
                match_type=MatchType.STANDARD.value,
                match_uid=match.uid,
            )
        return group_id

    # ── Repair ───────────────────────────────────────────────────────────

    async def repair_missing_intent_links(self) -> int:
        """
        Re-link in-flow intents whose home or search reference is missing.

        Each user owns at most one home and one search, so the link is
        recovered by user id.  Returns the number of intents repaired.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Intent.id, Intent.user_id)
                .where(
                    Intent.is_in_flow.is_(True),
                    Intent.total_matches_remaining > 0,
                    or_(Intent.home_id.is_(None), Intent.search_id.is_(None)),
                )
                .limit(REPAIR_BATCH_SIZE)
            )
            broken = result.all()

        repaired = 0
        for intent_id, user_id in broken:
            async with self.session_factory() as session:
                async with session.begin():
                    intent = await session.get(Intent, intent_id, with_for_update=True)
                    if intent is None:
                        continue
                    if intent.home_id is None:
                        intent.home_id = await session.scalar(
                            select(Home.id).where(Home.user_id == user_id)
                        )
                    if intent.search_id is None:
                        intent.search_id = await session.scalar(
                            select(Search.id).where(Search.user_id == user_id)
                        )
                    if intent.home_id is not None and intent.search_id is not None:
                        repaired += 1
                        intent.updated_at = datetime.now(timezone.utc)

        if broken:
            logger.info("Repaired %d/%d intent(s) with missing links", repaired, len(broken))
        return repaired


standard_matcher = StandardMatcher()
