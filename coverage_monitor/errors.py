"""Exception hierarchy for the coverage monitor."""


class CoverageMonitorError(Exception):
    """Base class for all coverage monitor errors."""


class ConnectorError(CoverageMonitorError):
    """A source connector failed (network, auth, malformed response or config).

    Always scoped to a single source; the orchestrator records it and moves on.
    """

    def __init__(self, message: str, source: str | None = None):
        super().__init__(message)
        self.source = source


class InvalidRequestError(CoverageMonitorError):
    """Trigger input is malformed (maps to HTTP 400)."""


class NotFoundError(CoverageMonitorError):
    """A referenced source, outlet or item does not exist (maps to HTTP 404)."""


class InvalidTransitionError(CoverageMonitorError):
    """An approval status change is not allowed from the item's current state."""

    def __init__(self, item_id: str, from_status: str, to_status: str):
        super().__init__(f"Cannot move item {item_id} from {from_status} to {to_status}")
        self.item_id = item_id
        self.from_status = from_status
        self.to_status = to_status
