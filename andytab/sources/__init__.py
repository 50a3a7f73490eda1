"""Remote store adapters."""

from .webdav import ConnectionTestResult, RemoteEntry, WebDAVClient, parse_multistatus

__all__ = [
    "ConnectionTestResult",
    "RemoteEntry",
    "WebDAVClient",
    "parse_multistatus",
]
