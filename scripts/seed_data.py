"""
Test data seeder — populates the database with sample exchange profiles.

Usage:
    python scripts/seed_data.py

Creates (each with a home, a search, an in-flow intent and a paid pack):
  - 2 users in Paris whose searches accept each other  -> one STANDARD pair
  - 3 users in Lyon whose searches form a cycle         -> one TRIANGLE
  - 1 user in Marseille with no compatible counterpart

Idempotent: checks for existing emails before inserting.  Every seeded
intent is then enqueued for matching.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select

from app.database import async_session
from app.matching_engine.enqueue import enqueue_service
from app.models import (
    Home,
    HomeType,
    Intent,
    Payment,
    PaymentStatus,
    Search,
    SearchZone,
    User,
)

# ---------------------------------------------------------------------------
# Zones
# ---------------------------------------------------------------------------

PARIS_11 = ("Paris 11e", 48.8590, 2.3800, 2_000)
PARIS_15 = ("Paris 15e", 48.8412, 2.3003, 2_000)
LYON_2 = ("Lyon 2e", 45.7485, 4.8270, 500)
LYON_6 = ("Lyon 6e", 45.7700, 4.8520, 500)
LYON_7 = ("Lyon 7e", 45.7450, 4.8420, 500)
MARSEILLE = ("Marseille 1er", 43.2990, 5.3800, 3_000)


@dataclass
class Profile:
    email: str
    first_name: str
    home_zone: tuple
    home_type: str
    rent: int
    surface: int
    rooms: int
    wanted_zone: tuple
    max_rent: int
    credits: int = 3


SAMPLE_PROFILES: list[Profile] = [
    # --- Reciprocal pair ------------------------------------------------------
    Profile("camille@example.com", "Camille", PARIS_11, HomeType.T2.value, 950, 42, 2, PARIS_15, 1000),
    Profile("hugo@example.com", "Hugo", PARIS_15, HomeType.T2.value, 980, 45, 2, PARIS_11, 1000),
    # --- Triangle: Lea wants 6e, Nina wants 7e, Omar wants 2e -----------------
    Profile("lea@example.com", "Léa", LYON_2, HomeType.STUDIO.value, 600, 25, 1, LYON_6, 700),
    Profile("nina@example.com", "Nina", LYON_6, HomeType.STUDIO.value, 650, 27, 1, LYON_7, 700),
    Profile("omar@example.com", "Omar", LYON_7, HomeType.STUDIO.value, 620, 26, 1, LYON_2, 700),
    # --- No counterpart -------------------------------------------------------
    Profile("ines@example.com", "Inès", MARSEILLE, HomeType.T3.value, 1100, 65, 3, PARIS_11, 1200, credits=1),
]


async def seed() -> None:
    """Insert missing profiles, then enqueue every seeded intent."""
    intent_ids = []
    new_count = 0

    async with async_session() as session:
        async with session.begin():
            for profile in SAMPLE_PROFILES:
                existing = await session.scalar(select(User).where(User.email == profile.email))
                if existing is not None:
                    intent_id = await session.scalar(
                        select(Intent.id).where(Intent.user_id == existing.id)
                    )
                    if intent_id is not None:
                        intent_ids.append(intent_id)
                    continue

                intent_ids.append(await _create_profile(session, profile))
                new_count += 1

    print(f"  Profiles: {new_count} new, {len(SAMPLE_PROFILES) - new_count} existing")

    stats = await enqueue_service.enqueue_many(intent_ids)
    print(
        f"  Enqueued: {stats['enqueued']}, skipped: {stats['skipped']}, "
        f"errors: {stats['errors']}"
    )
    print("\n  Seed complete! Start a worker with: python scripts/run_worker.py")


async def _create_profile(session, profile: Profile):
    user = User(email=profile.email, first_name=profile.first_name)
    session.add(user)
    await session.flush()

    label, lat, lng, _radius = profile.home_zone
    home = Home(
        user_id=user.id,
        address_formatted=label,
        lat=lat,
        lng=lng,
        home_type=profile.home_type,
        rent=profile.rent,
        surface=profile.surface,
        nb_rooms=profile.rooms,
    )
    zone_label, zone_lat, zone_lng, zone_radius = profile.wanted_zone
    search = Search(
        user_id=user.id,
        max_rent=profile.max_rent,
        home_types=[profile.home_type],
        zones=[SearchZone(label=zone_label, lat=zone_lat, lng=zone_lng, radius=zone_radius)],
    )
    session.add_all([home, search])
    await session.flush()

    intent = Intent(
        user_id=user.id,
        home_id=home.id,
        search_id=search.id,
        is_in_flow=True,
        total_matches_purchased=profile.credits,
        total_matches_remaining=profile.credits,
    )
    session.add(intent)
    await session.flush()

    session.add(Payment(
        user_id=user.id,
        intent_id=intent.id,
        pack_id=f"pack_{profile.credits}",
        amount=Decimal("9.90") * profile.credits,
        matches_initial=profile.credits,
        status=PaymentStatus.SUCCEEDED,
    ))
    return intent.id


if __name__ == "__main__":
    asyncio.run(seed())
