"""
Service Layer Exceptions

Error taxonomy shared by the Decision Evaluator, the Session Orchestrator and
the Workflow Run Engine. Every error carries a ``retryable`` flag so that the
outer layer can tell "try again" failures apart from "this cannot be done".
"""


class OutreachError(Exception):
    """Base class for all errors raised by the orchestration core."""

    retryable = False


class ValidationError(OutreachError):
    """Raised for malformed or missing input (empty goal, unknown label, bad payload)."""


class NotFoundError(OutreachError):
    """Raised when a session, template or run does not exist."""


class EvaluationError(OutreachError):
    """Raised when the language model keeps returning unusable output."""

    def __init__(self, message: str, raw_output: str = "", cost_cents: int = 0):
        super().__init__(message)
        self.raw_output = raw_output
        # Metered cost of the provider calls that produced the unusable output
        self.cost_cents = cost_cents


class ProviderError(OutreachError):
    """Raised when the language-model provider call itself fails."""

    retryable = True

    def __init__(self, message: str, cost_cents: int = 0):
        super().__init__(message)
        # Metered cost of earlier calls in the same operation
        self.cost_cents = cost_cents


class ConcurrencyError(OutreachError):
    """Another operation is already mutating the same entity."""

    retryable = True


class SessionBusyError(ConcurrencyError):
    """A turn-producing call is already in flight for this session."""


class RunBusyError(ConcurrencyError):
    """Another signal is already being applied to this workflow run."""


class StaleStateError(ConcurrencyError):
    """A status precondition failed because the entity changed underneath us."""


class StateError(OutreachError):
    """The operation is not allowed in the entity's current state."""


class TerminalStateError(StateError):
    """The session or run is completed/failed/cancelled/achieved/timed out."""


class IncompleteApprovalError(StateError):
    """An approvals payload did not decide every pending approval."""

    def __init__(self, missing_ids):
        self.missing_ids = sorted(missing_ids)
        super().__init__(
            f"Approval decisions missing for pending actions: {', '.join(self.missing_ids)}"
        )
