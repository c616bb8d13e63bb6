# logrelay/errors.py
"""Exception hierarchy.

    RelayError
    ├── ValidationError          malformed submission, rejected before any mutation
    ├── RateLimitError           client exceeded its request window
    ├── AmbiguousSelectionError  several origins/topics match, caller must pick one
    ├── AddressNotFoundError     requested tenant/origin/topic does not exist
    └── SubscriptionError        push channel failed (consumer falls back)
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional


class RelayError(Exception):
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


class ValidationError(RelayError):
    status_code = 400

    def to_body(self) -> dict:
        return {"error": self.message}


class RateLimitError(RelayError):
    status_code = 429

    def __init__(self, retry_after: int, count: int, limit: int) -> None:
        super().__init__(
            "Too many requests",
            {"retryAfter": retry_after, "requestCount": count, "limit": limit},
        )
        self.retry_after = retry_after
        self.count = count
        self.limit = limit

    def to_body(self) -> dict:
        return {
            "error": self.message,
            "retryAfter": self.retry_after,
            "requestCount": self.count,
            "limit": self.limit,
        }


class AmbiguousSelectionError(RelayError):
    def __init__(self, message: str, parameter: str, candidates: List[str]) -> None:
        super().__init__(message, {"parameter": parameter, "candidates": candidates})
        self.parameter = parameter
        self.candidates = candidates


class AddressNotFoundError(RelayError):
    def __init__(self, message: str, parameter: str, candidates: List[str]) -> None:
        super().__init__(message, {"parameter": parameter, "candidates": candidates})
        self.parameter = parameter
        self.candidates = candidates


class SubscriptionError(RelayError):
    """Transport-level failure of a push subscription. Always recoverable."""
