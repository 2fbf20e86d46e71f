"""
Typed failures for a whole resolution.

Only these ever escape HLSResolver.resolve(); per-candidate and per-interaction
problems are absorbed where they happen.
"""

from typing import Optional

from .models import ErrorCode, ErrorDetail


class ResolveError(Exception):
    """Base class: carries a machine-readable code and a retry hint."""

    code: ErrorCode = ErrorCode.SERVER_ERROR
    is_transient: bool = True

    def __init__(self, message: str, *, retry_after_seconds: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after_seconds = retry_after_seconds

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            code=self.code,
            message=self.message,
            is_transient=self.is_transient,
            retry_after_seconds=self.retry_after_seconds,
        )


class InvalidUrlError(ResolveError):
    code = ErrorCode.INVALID_URL
    is_transient = False


class DomainNotAllowedError(ResolveError):
    code = ErrorCode.DOMAIN_NOT_ALLOWED
    is_transient = False


class NavigationError(ResolveError):
    code = ErrorCode.NAVIGATION_ERROR


class NavigationTimeoutError(NavigationError):
    code = ErrorCode.NAVIGATION_TIMEOUT


class NetworkError(NavigationError):
    code = ErrorCode.NETWORK_ERROR


class PoolShutdownError(ResolveError):
    code = ErrorCode.SERVICE_UNAVAILABLE


class PoolSaturatedError(ResolveError):
    """No page slot freed up within the resolution budget."""

    code = ErrorCode.SERVICE_UNAVAILABLE


class InvalidManifest(ValueError):
    """Playlist text failed the #EXTM3U / #EXT-X- validity check."""


def classify_navigation_error(exc: BaseException, url: str = "") -> NavigationError:
    """Map a playwright/asyncio navigation failure to timeout, network or generic."""
    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    suffix = f" ({url})" if url else ""
    if "timeout" in lowered or exc.__class__.__name__ in ("TimeoutError", "CancelledError"):
        return NavigationTimeoutError(f"Navigation timeout{suffix}: {message}")
    if "net::err" in lowered or "ns_error" in lowered:
        return NetworkError(f"Network error{suffix}: {message}")
    return NavigationError(f"Navigation failed{suffix}: {message}")
