"""SQLAlchemy ORM models for the SwapFlow matching subsystem."""

from app.models.user import User
from app.models.home import Home, HomeType
from app.models.search import Search, SearchZone
from app.models.intent import Intent
from app.models.payment import Payment, PaymentStatus
from app.models.match import Match, MatchType, MatchStatus
from app.models.matching_task import MatchingTask, TaskStatus, TaskType
from app.models.intent_edge import IntentEdge
from app.models.notification_outbox import MatchNotificationOutbox

__all__ = [
    "User",
    "Home", "HomeType",
    "Search", "SearchZone",
    "Intent",
    "Payment", "PaymentStatus",
    "Match", "MatchType", "MatchStatus",
    "MatchingTask", "TaskStatus", "TaskType",
    "IntentEdge",
    "MatchNotificationOutbox",
]
