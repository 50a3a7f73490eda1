"""Error taxonomy shared by the WebDAV client, local store and sync engine."""

from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable failure kinds surfaced to callers."""

    CONFIG_INVALID = "config_invalid"
    AUTH_FAILED = "auth_failed"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    NETWORK_UNREACHABLE = "network_unreachable"
    TIMEOUT = "timeout"
    POLICY_REJECTED = "policy_rejected"
    PARSE_FAILED = "parse_failed"
    LOCAL_STORE = "local_store"
    UNKNOWN = "unknown"


class AndyTabError(Exception):
    """Base class for all AndyTab errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class ConfigInvalidError(AndyTabError):
    """Missing or malformed WebDAV URL or credentials."""

    kind = ErrorKind.CONFIG_INVALID


class ParseFailedError(AndyTabError):
    """A snapshot body or directory listing could not be parsed."""

    kind = ErrorKind.PARSE_FAILED


class LocalStoreError(AndyTabError):
    """The local key-value backend rejected a write."""

    kind = ErrorKind.LOCAL_STORE


class RemoteStoreError(AndyTabError):
    """Base class for failures reported by the WebDAV server or transport.

    Attributes:
        status_code: HTTP status when the server answered, else None
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthFailedError(RemoteStoreError):
    kind = ErrorKind.AUTH_FAILED


class ForbiddenError(RemoteStoreError):
    kind = ErrorKind.FORBIDDEN


class NotFoundError(RemoteStoreError):
    kind = ErrorKind.NOT_FOUND


class ServerError(RemoteStoreError):
    kind = ErrorKind.SERVER_ERROR


class NetworkUnreachableError(RemoteStoreError):
    kind = ErrorKind.NETWORK_UNREACHABLE


class WebDAVTimeoutError(RemoteStoreError):
    kind = ErrorKind.TIMEOUT


class PolicyRejectedError(RemoteStoreError):
    """The request was refused by a cross-origin or proxy policy."""

    kind = ErrorKind.POLICY_REJECTED


class UnknownRemoteError(RemoteStoreError):
    kind = ErrorKind.UNKNOWN


_STATUS_ERRORS: dict[int, type[RemoteStoreError]] = {
    401: AuthFailedError,
    403: ForbiddenError,
    404: NotFoundError,
}


def error_for_status(status_code: int, message: str) -> RemoteStoreError:
    """Build the typed error matching an HTTP status code."""
    if status_code in _STATUS_ERRORS:
        return _STATUS_ERRORS[status_code](message, status_code)
    if status_code >= 500:
        return ServerError(message, status_code)
    return UnknownRemoteError(message, status_code)


# Actionable text shown by connection tests, keyed by failure kind.
USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.CONFIG_INVALID: "WebDAV URL or credentials are missing or malformed",
    ErrorKind.AUTH_FAILED: "Authentication failed: check the username and password",
    ErrorKind.FORBIDDEN: "Permission denied: cannot access the WebDAV directory",
    ErrorKind.NOT_FOUND: "Wrong server address or the WebDAV directory does not exist",
    ErrorKind.SERVER_ERROR: "Server error: the WebDAV service may not be running properly",
    ErrorKind.NETWORK_UNREACHABLE: "Network error: cannot reach the server, check the address and connection",
    ErrorKind.TIMEOUT: "Connection timed out: the server is slow or the network is unstable",
    ErrorKind.POLICY_REJECTED: "Request rejected by a cross-origin policy: check the server CORS configuration",
    ErrorKind.PARSE_FAILED: "The server returned a response that could not be parsed",
    ErrorKind.LOCAL_STORE: "Local storage is unavailable",
    ErrorKind.UNKNOWN: "Connection failed",
}
