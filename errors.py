from typing import Dict, Optional


class MarketError(Exception):
    """Base class for errors the API turns into short user-facing messages."""


class AuthError(MarketError):
    pass


class AuthorizationError(MarketError):
    pass


class NotFoundError(MarketError):
    pass


class ValidationFailed(MarketError):
    def __init__(self, message: str, fields: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.fields = fields or {}
