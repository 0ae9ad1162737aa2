"""Error taxonomy for the sync engine."""


class SyncError(Exception):
    """
    Base exception for sync engine errors.

    api_calls and rate_limit_hits record the HTTP requests spent before the
    error was raised, so a failed attempt is still accounted for.
    """

    api_calls: int = 0
    rate_limit_hits: int = 0


class APIError(SyncError):
    """Base exception for accounting API failures."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientAPIError(APIError):
    """Network failure or 5xx response that survived every retry."""

    pass


class RateLimited(APIError):
    """Rate-limit responses persisted past the retry budget."""

    def __init__(self, message: str, hits: int):
        super().__init__(message, status_code=429)
        self.hits = hits
        self.rate_limit_hits = hits


class ApiClientError(APIError):
    """Non-retryable 4xx response (bad request, auth, not found)."""

    pass


class MalformedRecord(SyncError):
    """A fetched record cannot be staged (missing id, bad timestamp, ...)."""

    def __init__(self, message: str, external_id: str | None = None):
        super().__init__(message)
        self.external_id = external_id


class ConcurrentSyncConflict(SyncError):
    """A checkpoint compare-and-set lost against another writer."""

    def __init__(self, entity_type: str, expected_status: str | None = None):
        detail = f" (expected status {expected_status!r})" if expected_status else ""
        super().__init__(f"Concurrent sync conflict on {entity_type}{detail}")
        self.entity_type = entity_type
        self.expected_status = expected_status


class SessionAlreadyRunning(SyncError):
    """Another session holds the tenant's lease."""

    def __init__(self, tenant_id: str, session_id: str | None = None):
        super().__init__(
            f"A sync session is already running for tenant {tenant_id}"
            + (f" (session {session_id})" if session_id else "")
        )
        self.tenant_id = tenant_id
        self.session_id = session_id


class SyncTimeout(SyncError):
    """The session deadline passed before the entity finished."""

    pass


class InvalidEntityType(SyncError):
    """An unknown entity type was requested."""

    def __init__(self, values: list[str]):
        super().__init__(f"Invalid entity type(s): {', '.join(values)}")
        self.values = values


class SessionNotFound(SyncError):
    """No sync session exists with the given id."""

    pass
