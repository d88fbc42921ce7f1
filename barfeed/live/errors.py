"""
Custom exceptions for the live bar stream.

Exception hierarchy:
- BarFeedError (base)
  - StreamConnectionError: Upstream connect/read failures
  - MessageParseError: Invalid/malformed stream records
  - SubscriptionError: Invalid subscribe/unsubscribe requests
  - HistoryError: History endpoint failures
  - ConfigurationError: Invalid configuration
"""

from __future__ import annotations

from typing import Any, Optional


class BarFeedError(Exception):
    """Base exception for all bar feed errors."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.component = component
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.component:
            parts.append(f"[component={self.component}]")
        if self.details:
            parts.append(f"[details={self.details}]")
        return " ".join(parts)


class StreamConnectionError(BarFeedError):
    """Raised when the upstream stream cannot be opened or read."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        attempt: int = 0,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.url = url
        self.attempt = attempt
        details = details or {}
        if url:
            details["url"] = url
        details["attempt"] = attempt
        super().__init__(message, component=component, details=details)


class MessageParseError(BarFeedError):
    """Raised when a stream record cannot be parsed into a tick."""

    def __init__(
        self,
        message: str,
        *,
        raw_data: Optional[str] = None,
        expected_type: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.raw_data = raw_data
        self.expected_type = expected_type
        details = details or {}
        if expected_type:
            details["expected_type"] = expected_type
        # raw_data stays out of details, lines can be long
        super().__init__(message, component=component, details=details)


class SubscriptionError(BarFeedError):
    """Raised for invalid subscription requests."""

    def __init__(
        self,
        message: str,
        *,
        instrument_id: Optional[str] = None,
        listener_id: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.instrument_id = instrument_id
        self.listener_id = listener_id
        details = details or {}
        if instrument_id:
            details["instrument_id"] = instrument_id
        if listener_id:
            details["listener_id"] = listener_id
        super().__init__(message, component=component, details=details)


class HistoryError(BarFeedError):
    """Raised when the history endpoint fails or returns an unusable payload."""

    def __init__(
        self,
        message: str,
        *,
        symbol: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.symbol = symbol
        details = details or {}
        if symbol:
            details["symbol"] = symbol
        super().__init__(message, component=component, details=details)


class ConfigurationError(BarFeedError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.value = value
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, component=component, details=details)
