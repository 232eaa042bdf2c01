"""
Triangle (3-party) matching engine.

A triangle A→B→C→A means A takes B's home, B takes C's home and C takes
A's home.  Candidates come from the ``intent_edges`` table, a directed
compatibility graph refreshed lazily for each seeker:

* outgoing edges  seeker → X  when X's home satisfies the seeker's search
* incoming edges  X → seeker  when the seeker's home satisfies X's search

A cycle is only considered when the reverse edges B→A and C→B are absent
(otherwise A/B or B/C should form a STANDARD pair) and no existing match
already links any pair of the cycle.

The search is bounded: batches of ``TRIANGLE_BATCH_SIZE`` candidates,
every attempted (B, C) pair blacklisted for the rest of the call, and a
hard stop after ``TRIANGLE_MAX_TOTAL_ATTEMPTS`` attempts or
``TRIANGLE_MAX_DB_BATCHES`` queries.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import and_, delete, exists, not_, or_, select, tuple_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from app.matching_engine import criteria
from app.matching_engine.config import (
    TRIANGLE_BATCH_SIZE,
    TRIANGLE_MAX_DB_BATCHES,
    TRIANGLE_MAX_TOTAL_ATTEMPTS,
    MatchingConfig,
)
from app.matching_engine.credit_ledger import consume_payment_credit, decrement_intent_credits
from app.matching_engine.exceptions import (
    InsufficientCreditsError,
    InsufficientPaymentCreditsError,
    TriangleRejectedError,
)
from app.matching_engine.outbox import write_outbox_entry
from app.matching_engine.standard_matcher import (
    eligible_intent_conditions,
    home_conditions_for_search,
    search_conditions_for_home,
    with_profile,
)
from app.models.home import Home
from app.models.intent import Intent
from app.models.intent_edge import IntentEdge
from app.models.match import Match, MatchType
from app.models.search import Search

logger = logging.getLogger(__name__)

# Failure reasons returned by commit_triangle
INTENT_NOT_FOUND = "INTENT_NOT_FOUND"
DUPLICATE_MATCH = "DUPLICATE_MATCH"
DUPLICATE_CONSTRAINT = "DUPLICATE_CONSTRAINT"
STALE_EDGE = "STALE_EDGE"

# Seeker-side failures end the search: nothing else can succeed for A
_SEEKER_EXHAUSTED = {INTENT_NOT_FOUND, "A_NOT_ELIGIBLE", "INSUFFICIENT_PAYMENT_CREDITS_A"}

ScoreFn = Callable[[object, object], float]


class TriangleMatcher:
    """Finds and commits 3-cycles for one seeker at a time."""

    def __init__(
        self,
        session_factory=None,
        config: MatchingConfig | None = None,
        score_fn: ScoreFn | None = None,
    ):
        self._session_factory = session_factory
        self._config = config
        self.score_fn: ScoreFn = score_fn or criteria.rent_proximity_score

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

    async def run_for_intent(self, intent_id, run_id: str, max_triangles: int | None = None) -> int:
        """
        Refresh the seeker's edges and commit up to *max_triangles* cycles.

        Returns the number of triangles created.
        """
        limit = max_triangles or self.config.max_triangles_per_seeker
        await self.refresh_edges(intent_id)

        blacklist: set[tuple] = set()
        failures: Counter = Counter()
        attempts = 0
        batches = 0
        created = 0
        stop = False

        while (
            not stop
            and created < limit
            and attempts < TRIANGLE_MAX_TOTAL_ATTEMPTS
            and batches < TRIANGLE_MAX_DB_BATCHES
        ):
            candidates = await self.find_candidates(intent_id, blacklist, TRIANGLE_BATCH_SIZE)
            batches += 1
            if not candidates:
                break

            for b_id, c_id, _score in candidates:
                if attempts >= TRIANGLE_MAX_TOTAL_ATTEMPTS:
                    break
                attempts += 1
                blacklist.add((b_id, c_id))

                ok, reason = await self._attempt(intent_id, b_id, c_id, run_id)
                if ok:
                    created += 1
                    if created >= limit:
                        break
                    continue

                failures[reason] += 1
                if reason in _SEEKER_EXHAUSTED:
                    stop = True
                    break

        if attempts >= TRIANGLE_MAX_TOTAL_ATTEMPTS or batches >= TRIANGLE_MAX_DB_BATCHES:
            logger.info(
                "Triangle search for %s hit its bounds (attempts=%d, batches=%d)",
                intent_id, attempts, batches,
            )
        if created or failures:
            logger.info(
                "Triangle matching: seeker %s created=%d attempts=%d failures=%s (run=%s)",
                intent_id, created, attempts, dict(failures), run_id,
            )
        return created

    async def _attempt(self, a_id, b_id, c_id, run_id: str) -> tuple[bool, str | None]:
        if not await self.verify_cycle(a_id, b_id, c_id):
            return False, STALE_EDGE
        return await self.commit_triangle(a_id, b_id, c_id, run_id)

    # ── Edge graph ───────────────────────────────────────────────────────

    async def refresh_edges(self, intent_id) -> tuple[int, int]:
        """
        Recompute the seeker's outgoing and incoming edges.

        SQL narrows candidates with numeric bounds, accepted types and
        zone bounding boxes before the candidate limit; the exact zone
        tests run in Python.  Returns (outgoing, incoming) counts.
        """
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    with_profile(select(Intent).where(Intent.id == intent_id))
                )
                seeker = result.scalar_one_or_none()
                if seeker is None or not criteria.is_intent_eligible(seeker):
                    return 0, 0

                outgoing = await self._outgoing_edges(session, seeker)
                incoming = await self._incoming_edges(session, seeker)
                await self._upsert_edges(session, outgoing + incoming)

        logger.debug(
            "Refreshed edges for %s: %d outgoing, %d incoming",
            intent_id, len(outgoing), len(incoming),
        )
        return len(outgoing), len(incoming)

    async def _outgoing_edges(self, session, seeker: Intent) -> list[dict]:
        query = (
            select(Intent)
            .join(Home, Intent.home_id == Home.id)
            .where(
                Intent.id != seeker.id,
                Intent.user_id != seeker.user_id,
                *eligible_intent_conditions(),
                *home_conditions_for_search(seeker.search),
            )
            .order_by(Intent.created_at.asc())
            .limit(self.config.candidate_limit)
        )
        result = await session.execute(with_profile(query))

        edges = []
        for other in result.scalars().unique().all():
            if not criteria.dwelling_satisfies_search(other.home, seeker.search):
                continue
            if not criteria.home_in_search_zones(other.home, seeker.search):
                continue
            edges.append(self._edge(seeker.id, other.id, self.score_fn(other.home, seeker.search)))
        return edges

    async def _incoming_edges(self, session, seeker: Intent) -> list[dict]:
        home = seeker.home
        query = (
            select(Intent)
            .join(Search, Intent.search_id == Search.id)
            .where(
                Intent.id != seeker.id,
                Intent.user_id != seeker.user_id,
                *eligible_intent_conditions(),
                *search_conditions_for_home(home),
            )
            .order_by(Intent.created_at.asc())
            .limit(self.config.candidate_limit)
        )
        result = await session.execute(with_profile(query))

        edges = []
        for other in result.scalars().unique().all():
            if not criteria.dwelling_satisfies_search(home, other.search):
                continue
            if not criteria.home_in_search_zones(home, other.search):
                continue
            edges.append(self._edge(other.id, seeker.id, self.score_fn(home, other.search)))
        return edges

    @staticmethod
    def _edge(from_id, to_id, score: float) -> dict:
        now = datetime.now(timezone.utc)
        return {
            "id": uuid.uuid4(),
            "from_intent_id": from_id,
            "to_intent_id": to_id,
            "score": float(score),
            "computed_at": now,
            "updated_at": now,
        }

    @staticmethod
    async def _upsert_edges(session, edges: list[dict]) -> None:
        if not edges:
            return
        stmt = pg_insert(IntentEdge.__table__).values(edges)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_intent_edges_pair",
            set_={
                "score": stmt.excluded.score,
                "computed_at": stmt.excluded.computed_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await session.execute(stmt)

    async def cleanup_stale_edges(self) -> int:
        """Delete edges that touch an intent that is no longer eligible."""
        ineligible = select(Intent.id).where(or_(
            Intent.is_in_flow.is_(False),
            Intent.total_matches_remaining <= 0,
        ))
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(IntentEdge).where(or_(
                        IntentEdge.from_intent_id.in_(ineligible),
                        IntentEdge.to_intent_id.in_(ineligible),
                    ))
                )
        removed = result.rowcount or 0
        if removed:
            logger.info("Removed %d stale intent edge(s)", removed)
        return removed

    # ── Candidate search ─────────────────────────────────────────────────

    async def find_candidates(self, intent_id, blacklist: set, limit: int) -> list[tuple]:
        """
        Return up to *limit* ``(b_id, c_id, total_score)`` cycles for A.

        Best total edge score first; blacklisted (B, C) pairs excluded.
        """
        ab = aliased(IntentEdge)
        bc = aliased(IntentEdge)
        ca = aliased(IntentEdge)
        reverse = aliased(IntentEdge)
        ia = aliased(Intent)
        ib = aliased(Intent)
        ic = aliased(Intent)
        now = datetime.now(timezone.utc)

        def eligible(i):
            return and_(
                i.is_in_flow.is_(True),
                i.total_matches_remaining > 0,
                i.is_actively_searching.is_(True),
                i.home_id.is_not(None),
                i.search_id.is_not(None),
            )

        def unlocked(i):
            return or_(i.matching_processing_until.is_(None), i.matching_processing_until <= now)

        def no_reverse(edge):
            return ~exists().where(
                reverse.from_intent_id == edge.to_intent_id,
                reverse.to_intent_id == edge.from_intent_id,
            )

        already_matched = exists().where(or_(
            and_(Match.seeker_intent_id == ia.id, Match.target_home_id == ib.home_id),
            and_(Match.seeker_intent_id == ib.id, Match.target_home_id == ic.home_id),
            and_(Match.seeker_intent_id == ic.id, Match.target_home_id == ia.home_id),
        ))

        total_score = (ab.score + bc.score + ca.score).label("total_score")
        query = (
            select(ab.to_intent_id, bc.to_intent_id, total_score)
            .select_from(ab)
            .join(bc, bc.from_intent_id == ab.to_intent_id)
            .join(ca, and_(
                ca.from_intent_id == bc.to_intent_id,
                ca.to_intent_id == ab.from_intent_id,
            ))
            .join(ia, ia.id == ab.from_intent_id)
            .join(ib, ib.id == ab.to_intent_id)
            .join(ic, ic.id == bc.to_intent_id)
            .where(
                ab.from_intent_id == intent_id,
                ab.to_intent_id != intent_id,
                bc.to_intent_id != intent_id,
                ab.to_intent_id != bc.to_intent_id,
                eligible(ia),
                eligible(ib),
                eligible(ic),
                # A is locked by the worker running this search
                unlocked(ib),
                unlocked(ic),
                no_reverse(ab),
                no_reverse(bc),
                ~already_matched,
            )
            .order_by(total_score.desc(), ab.to_intent_id, bc.to_intent_id)
            .limit(limit)
        )
        if blacklist:
            query = query.where(not_(tuple_(ab.to_intent_id, bc.to_intent_id).in_(list(blacklist))))

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [tuple(row) for row in result.all()]

    async def verify_cycle(self, a_id, b_id, c_id, now: datetime | None = None) -> bool:
        """Re-check the three directed edges against current data."""
        async with self.session_factory() as session:
            result = await session.execute(
                with_profile(select(Intent).where(Intent.id.in_([a_id, b_id, c_id])))
            )
            intents = {i.id: i for i in result.scalars().unique().all()}

        if len(intents) != 3:
            return False
        a, b, c = intents[a_id], intents[b_id], intents[c_id]
        for seeker, target in ((a, b), (b, c), (c, a)):
            if not criteria.dwelling_satisfies_search(target.home, seeker.search):
                return False
            if not criteria.home_in_search_zones(target.home, seeker.search):
                return False
            if not criteria.date_windows_overlap(
                seeker.search,
                target.search,
                fraction=self.config.date_tolerance_fraction,
                min_days=self.config.date_tolerance_min_days,
                now=now,
            ):
                return False
        return True

    # ── Commit ───────────────────────────────────────────────────────────

    async def commit_triangle(self, a_id, b_id, c_id, run_id: str) -> tuple[bool, str | None]:
        """
        Atomically create the three TRIANGLE matches of A→B→C→A.

        Returns ``(True, None)`` or ``(False, reason)``.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    group_id = await self._commit_in_session(session, a_id, b_id, c_id, run_id)
        except TriangleRejectedError as exc:
            logger.debug("Triangle %s/%s/%s rejected: %s", a_id, b_id, c_id, exc)
            return False, exc.reason
        except IntegrityError as exc:
            logger.debug("Triangle %s/%s/%s hit a unique constraint: %s", a_id, b_id, c_id, exc.orig)
            return False, DUPLICATE_CONSTRAINT

        logger.info(
            "TRIANGLE match created: %s -> %s -> %s group=%s run=%s",
            a_id, b_id, c_id, group_id, run_id,
        )
        return True, None

    async def _commit_in_session(self, session, a_id, b_id, c_id, run_id: str) -> uuid.UUID:
        result = await session.execute(
            select(Intent)
            .where(Intent.id.in_([a_id, b_id, c_id]))
            .order_by(Intent.id)
            .with_for_update()
        )
        locked = {intent.id: intent for intent in result.scalars().all()}
        if len(locked) != 3:
            raise TriangleRejectedError(INTENT_NOT_FOUND)

        parties = (("A", locked[a_id]), ("B", locked[b_id]), ("C", locked[c_id]))
        for label, intent in parties:
            if not criteria.is_intent_eligible(intent):
                raise TriangleRejectedError(f"{label}_NOT_ELIGIBLE", str(intent.id))

        a, b, c = (intent for _, intent in parties)
        duplicate = await session.execute(
            select(Match.id)
            .where(or_(
                and_(Match.seeker_intent_id == a.id, Match.target_home_id == b.home_id),
                and_(Match.seeker_intent_id == b.id, Match.target_home_id == c.home_id),
                and_(Match.seeker_intent_id == c.id, Match.target_home_id == a.home_id),
            ))
            .limit(1)
        )
        if duplicate.scalar_one_or_none() is not None:
            raise TriangleRejectedError(DUPLICATE_MATCH)

        for label, intent in parties:
            try:
                await consume_payment_credit(session, intent.user_id, intent.id)
            except InsufficientPaymentCreditsError as exc:
                raise TriangleRejectedError(f"INSUFFICIENT_PAYMENT_CREDITS_{label}", str(exc)) from exc

        group_id = uuid.uuid4()
        matches = []
        # Each party takes the next party's home
        for seeker, target in ((a, b), (b, c), (c, a)):
            target_home = await session.get(Home, target.home_id)
            matches.append(Match(
                group_id=group_id,
                seeker_intent_id=seeker.id,
                target_intent_id=target.id,
                target_home_id=target.home_id,
                type=MatchType.TRIANGLE,
                snapshot=target_home.snapshot() if target_home else None,
            ))
        session.add_all(matches)
        await session.flush()

        for label, intent in parties:
            try:
                await decrement_intent_credits(session, intent.id)
            except InsufficientCreditsError as exc:
                raise TriangleRejectedError(f"{label}_NOT_ELIGIBLE", str(exc)) from exc

        for intent, match in zip((a, b, c), matches):
            await write_outbox_entry(
                session,
                run_id=run_id,
                user_id=intent.user_id,
                intent_id=intent.id,
                match_type=MatchType.TRIANGLE.value,
                match_uid=match.uid,
            )
        return group_id


triangle_matcher = TriangleMatcher()
