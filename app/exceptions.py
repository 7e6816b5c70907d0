"""
Exception Classes - Strongly typed exception hierarchy.

Only infrastructure and access failures are exceptions. Business outcomes
(quota exhausted, cap reached, token already used, ...) are typed results
returned by the services and never raised. The HTTP client turns an
issuance refusal back into IssueRejectedError for its callers.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from app.models.api import IssueFailure


class RedemptionError(Exception):
    """Base exception for all redemption engine errors."""

    pass


class WriteVerificationError(RedemptionError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(RedemptionError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class DatabaseError(RedemptionError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class ConcurrencyError(RedemptionError):
    """Raised when concurrent modification detected."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class AuthenticationError(RedemptionError):
    """Raised when the caller's identity token cannot be verified."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(RedemptionError):
    """Raised when caller lacks the role an operation requires."""

    def __init__(self, required_role: str) -> None:
        self.required_role = required_role
        super().__init__(f"Authorization failed: missing role {required_role}")


# ============================================================================
# Client-side errors (raised by app.client)
# ============================================================================


class IssueRejectedError(RedemptionError):
    """Raised by the API client when the server refuses to issue a token."""

    def __init__(self, reason: IssueFailure, status_code: int) -> None:
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Token issuance rejected: {reason.value}")


class ServiceUnavailableError(RedemptionError):
    """Raised by the API client on transport failures and unexpected responses."""

    def __init__(
        self, message: str, status_code: int | None = None, retry_after: float | None = None
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(f"Redemption service error: {message}")
