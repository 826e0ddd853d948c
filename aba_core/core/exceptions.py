"""Access and integrity error taxonomy.

Predicates and filters never raise for "no access"; these are raised by the
service layer and by the encryption codec.
"""


class AccessError(Exception):
    """Base exception for access-control failures."""

    pass


class Unauthenticated(AccessError):
    """No valid caller."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class MissingOrganizationContext(AccessError):
    """Caller is authenticated but has no organization selected."""

    def __init__(self, message: str = "Organization context required for data access"):
        super().__init__(message)


class Unauthorized(AccessError):
    """Valid caller with insufficient role, ownership or organization match."""

    pass


class InvalidTransition(Unauthorized):
    """Treatment plan status transition rejected by the state machine."""

    def __init__(
        self,
        current: str,
        action: str,
        attempted: str | None = None,
        detail: str | None = None,
    ):
        self.current = current
        self.action = action
        self.attempted = attempted
        message = f"Cannot {action} treatment plan in status {current}"
        if attempted:
            message = f"{message} (attempted status {attempted})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class NotFound(AccessError):
    """Entity does not exist within the caller's organization."""

    pass


class IntegrityViolation(Exception):
    """
    Encrypted value failed integrity verification or could not be decoded.

    Never swallowed.
    """

    pass


class AuditWriteFailure(Exception):
    """Audit entry could not be written. Logged, never raised to callers."""

    pass
