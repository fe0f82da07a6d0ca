"""Database models."""
from .push_token import PushToken
from .stored_value import StoredValue

__all__ = ["PushToken", "StoredValue"]
