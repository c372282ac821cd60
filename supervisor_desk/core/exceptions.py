"""Errors raised by the knowledge store, the ledger and the coordinator."""


class SupervisorDeskError(Exception):
    """Base exception for supervisor desk operations."""


class ValidationError(SupervisorDeskError):
    """Malformed input to a store or ledger write."""


class NotFoundError(SupervisorDeskError):
    """Unknown help request or knowledge entry id."""

    def __init__(self, kind: str, item_id):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind} {item_id} not found")


class InvalidStateError(SupervisorDeskError):
    """Illegal state transition, e.g. resolving a request that already timed out."""

    def __init__(self, request_id, status: str, action: str = "resolve"):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Cannot {action} request {request_id} (status: {status})")


class DuplicateSessionError(SupervisorDeskError):
    """The session already has an open help request."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has an open help request")


class DependencyError(SupervisorDeskError):
    """A backend (database, notifier) could not be reached."""

    def __init__(self, message: str, dependency: str = "unknown"):
        self.dependency = dependency
        super().__init__(f"[{dependency}] {message}")
