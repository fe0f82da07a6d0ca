"""Exceptions raised inside the session core."""
from typing import Optional


class SessionCoreError(Exception):
    """Base exception for the session core."""
    pass


class ProviderError(SessionCoreError):
    """The identity provider rejected or failed a call."""

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)

    @property
    def is_auth_failure(self) -> bool:
        """True when the provider refused the credentials themselves."""
        return self.status_code in (400, 401, 403, 422)


class InvalidTransition(SessionCoreError):
    """Operation not allowed from the current authentication state."""

    def __init__(self, operation: str, state: str):
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} while {state}")


class StoreError(SessionCoreError):
    """Push token persistence failed."""
    pass


class ParseError(SessionCoreError):
    """An OAuth callback URL could not be parsed."""
    pass


class NotificationError(SessionCoreError):
    """The notification platform failed outside of a permission decision."""
    pass
