"""
Matching engine exceptions.

Domain rejections (credit, duplicate, eligibility) are raised inside a
match transaction to roll it back; the algorithms catch them per
candidate and move on.  They never fail a task.
"""


class MatchRejectedError(Exception):
    """Base class for expected, candidate-scoped rejections."""
    pass


class InsufficientCreditsError(MatchRejectedError):
    """An intent has no remaining match credit."""
    pass


class IntentNotEligibleError(MatchRejectedError):
    """An intent left the flow (or vanished) between search and commit."""
    pass


class DuplicateMatchError(MatchRejectedError):
    """A match between these parties already exists."""
    pass


class InsufficientPaymentCreditsError(MatchRejectedError):
    """No payment record for the user/intent has remaining capacity."""

    def __init__(self, user_id, intent_id):
        self.user_id = user_id
        self.intent_id = intent_id
        super().__init__(
            f"No payment with remaining credits for user={user_id} intent={intent_id}"
        )


class TriangleRejectedError(MatchRejectedError):
    """A triangle commit was refused; ``reason`` is a stable code."""

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        super().__init__(f"{reason}: {detail}" if detail else reason)


class MaintenanceAlreadyRunningError(Exception):
    """A maintenance run is already in progress in this process."""

    def __init__(self, run_id: str | None):
        self.run_id = run_id
        super().__init__(f"Maintenance already running (run_id={run_id})")


class CreditGuardError(Exception):
    """Base class for refund/purchase guard refusals."""

    code = "CREDIT_GUARD"

    def __init__(self, message: str, until=None):
        self.until = until
        super().__init__(message)


class MatchingInProgressError(CreditGuardError):
    """A refund was requested while a worker is processing the intent."""

    code = "MATCHING_IN_PROGRESS"


class RefundCooldownActiveError(CreditGuardError):
    """A purchase was attempted before the post-refund cooldown elapsed."""

    code = "REFUND_COOLDOWN_ACTIVE"
