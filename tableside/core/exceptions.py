"""
Exception hierarchy for device session coordination.

Store adapters raise these; the coordinator turns them into tagged
results and the routers turn them into HTTP errors.
"""


class TablesideError(Exception):
    """Base class for all application errors."""


class StoreError(TablesideError):
    """A session store call did not complete as requested."""


class StoreUnavailableError(StoreError):
    """The session backend could not be reached or failed internally."""


class SessionAuthorizationError(StoreError):
    """The presented session token does not own the row being written."""


class SessionNotFoundError(StoreError):
    """No session row exists for the given token."""


class SessionConflictError(StoreError):
    """The write collides with an existing row (e.g. duplicate token)."""


class InvalidOrderDataError(TablesideError):
    """A relayed cart snapshot failed validation."""
