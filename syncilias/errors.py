from enum import Enum
from typing import Optional


class SyncIliasError(Exception):
    """Base class for all errors raised by syncilias"""

    kind = "error"


class ConfigError(SyncIliasError):
    kind = "config"


class NoCredentials(SyncIliasError):
    kind = "no-credentials"


class AuthErrorKind(Enum):
    INVALID_CREDENTIALS = "invalid credentials"
    PORTAL_UNREACHABLE = "portal unreachable"
    SHIBBOLETH_FLOW_CHANGED = "shibboleth flow changed"
    SESSION_EXPIRED_AGAIN = "session expired again after re-login"


class AuthError(SyncIliasError):
    """No valid session can be obtained. Fatal for the whole run."""

    kind = "auth"

    def __init__(self, reason: AuthErrorKind, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        message = reason.value
        if detail:
            message += f": {detail}"
        super().__init__(message)


class FetchError(SyncIliasError):
    kind = "fetch"

    def __init__(self, message: str, url: Optional[str] = None) -> None:
        self.url = url
        if url:
            message = f"{message} ({url})"
        super().__init__(message)


class NetworkError(FetchError):
    kind = "network"


class HttpError(FetchError):
    kind = "http"

    def __init__(self, status: int, url: Optional[str] = None) -> None:
        self.status = status
        super().__init__(f"HTTP status {status}", url)


class PortalError(FetchError):
    """ILIAS rendered an error page instead of the requested content"""

    kind = "portal"


class SessionExpired(FetchError):
    kind = "session-expired"


class CrawlError(SyncIliasError):
    kind = "crawl"


class ReconcileError(SyncIliasError):
    kind = "reconcile"


class JobError(SyncIliasError):
    kind = "job"
