"""
Matching task model — the durable work queue.

One row per (intent, task type).  Workers claim rows with
``FOR UPDATE SKIP LOCKED`` and drive them through the state machine
below; maintenance releases rows whose worker died.

    PENDING ──claim──▶ RUNNING ──▶ DONE
       ▲                  │
       ├── retry / stale ─┤
       │                  ▼
       └──── re-enqueue ─ FAILED
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Enum as SAEnum,
    event,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class TaskStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


class TaskType(str, enum.Enum):
    MATCHING = "MATCHING"


VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING},
    TaskStatus.RUNNING: {TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.PENDING},
    TaskStatus.DONE: {TaskStatus.PENDING},
    TaskStatus.FAILED: {TaskStatus.PENDING},
}


class MatchingTask(Base):
    __tablename__ = "matching_tasks"
    __table_args__ = (
        UniqueConstraint("intent_id", "type", name="uq_matching_tasks_intent_type"),
        Index("ix_matching_tasks_claim", "status", "available_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    intent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("intents.id"), nullable=False,
    )
    type: Mapped[TaskType] = mapped_column(
        SAEnum(TaskType, name="matchingtasktype"),
        default=TaskType.MATCHING,
    )
    status: Mapped[TaskStatus] = mapped_column(
        SAEnum(TaskStatus, name="matchingtaskstatus"),
        default=TaskStatus.PENDING,
    )

    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    locked_by: Mapped[str | None] = mapped_column(String(255))
    run_id: Mapped[str | None] = mapped_column(String(64))
    last_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @staticmethod
    def is_valid_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
        return to_status in VALID_TRANSITIONS.get(from_status, set())

    def transition_to(self, new_status: TaskStatus) -> None:
        """
        Move to *new_status*, raising ValueError on an illegal transition.

        Leaving RUNNING always clears the lock fields.
        """
        if not self.is_valid_transition(self.status, new_status):
            raise ValueError(
                f"Invalid transition: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        if new_status != TaskStatus.RUNNING:
            self.locked_at = None
            self.locked_by = None

    def reset_for_requeue(self, now: datetime) -> None:
        """Re-enqueue a finished task with a clean attempt budget."""
        self.transition_to(TaskStatus.PENDING)
        self.attempts = 0
        self.last_error = None
        self.available_at = now
        self.run_id = None

    def __repr__(self) -> str:
        return (
            f"<MatchingTask {self.id} intent={self.intent_id} "
            f"{self.status.value if self.status else 'N/A'} "
            f"attempts={self.attempts}/{self.max_attempts}>"
        )


@event.listens_for(MatchingTask, "init")
def _set_task_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = uuid.uuid4()
    if "type" not in kwargs:
        target.type = TaskType.MATCHING
    if "status" not in kwargs:
        target.status = TaskStatus.PENDING
    if "attempts" not in kwargs:
        target.attempts = 0
    if "max_attempts" not in kwargs:
        target.max_attempts = 5
    now = datetime.now(timezone.utc)
    if "available_at" not in kwargs:
        target.available_at = now
    if "created_at" not in kwargs:
        target.created_at = now
    if "updated_at" not in kwargs:
        target.updated_at = now
