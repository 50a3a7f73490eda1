"""WebDAV client for the remote snapshot store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from urllib.parse import quote, unquote, urlsplit
from xml.etree import ElementTree as ET

import httpx

from andytab.core.config import WebDAVSettings
from andytab.core.errors import (
    USER_MESSAGES,
    AndyTabError,
    ConfigInvalidError,
    ErrorKind,
    NetworkUnreachableError,
    ParseFailedError,
    PolicyRejectedError,
    RemoteStoreError,
    UnknownRemoteError,
    WebDAVTimeoutError,
    error_for_status,
)

logger = logging.LoggerAdapter(logging.getLogger(__name__), {"log_category": "webdav"})

DAV_NS = {"d": "DAV:"}

PROPFIND_BODY = """<?xml version="1.0" encoding="UTF-8"?>
<d:propfind xmlns:d="DAV:">
    <d:prop>
        <d:resourcetype/>
        <d:getcontentlength/>
    </d:prop>
</d:propfind>
"""

_DIRECTORY_MARKERS = {"", ".", "..", "./", "../"}


@dataclass
class RemoteEntry:
    """A single item of a WebDAV directory listing."""

    name: str
    path: str
    is_directory: bool = False
    size: int = 0


@dataclass
class ConnectionTestResult:
    """Outcome of ``WebDAVClient.test_connection``."""

    success: bool
    message: str
    kind: ErrorKind | None = None


def parse_multistatus(xml_text: str, listed_path: str = "") -> list[RemoteEntry]:
    """Parse a PROPFIND multistatus body into directory entries.

    Args:
        xml_text: Response body
        listed_path: URL path of the collection that was listed; its own
            entry is dropped from the result

    Raises:
        ParseFailedError: If the body is not well-formed XML
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ParseFailedError(f"Malformed directory listing: {e}") from e

    own_path = unquote(listed_path).rstrip("/")
    entries: list[RemoteEntry] = []

    for response in root.findall("d:response", DAV_NS):
        href_el = response.find("d:href", DAV_NS)
        href = (href_el.text or "").strip() if href_el is not None else ""
        if href in _DIRECTORY_MARKERS:
            continue

        path = unquote(urlsplit(href).path)
        if path.rstrip("/") == own_path:
            continue

        name = next((part for part in reversed(path.split("/")) if part), "")
        if not name or name in _DIRECTORY_MARKERS:
            continue

        is_directory = response.find(".//d:resourcetype/d:collection", DAV_NS) is not None
        size_el = response.find(".//d:getcontentlength", DAV_NS)
        try:
            size = int(size_el.text) if size_el is not None and size_el.text else 0
        except ValueError:
            size = 0

        entries.append(RemoteEntry(name=name, path=href, is_directory=is_directory, size=size))

    return entries


class WebDAVClient:
    """Minimal WebDAV client over ``httpx.AsyncClient``.

    Every call runs under its own timeout. Expiry cancels the in-flight
    request and raises ``WebDAVTimeoutError``; other coroutines keep running.
    HTTP and transport failures are raised as typed ``RemoteStoreError``
    subclasses so callers can tell them apart.
    """

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        timeout_ms: int = 10_000,
        transfer_timeout_ms: int = 15_000,
        ssl_verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the WebDAV client.

        Args:
            url: Base URL of the WebDAV share (http or https)
            username: Basic auth username
            password: Basic auth password
            timeout_ms: Default per-call timeout
            transfer_timeout_ms: Timeout used for snapshot uploads/downloads
            ssl_verify: SSL verification flag
            transport: Optional httpx transport (used by tests)

        Raises:
            ConfigInvalidError: If the URL is missing or not http(s)
        """
        if not url or not url.startswith(("http://", "https://")):
            raise ConfigInvalidError(f"Invalid WebDAV URL: {url!r}")

        self.base_url = url if url.endswith("/") else f"{url}/"
        self.username = username
        self.timeout_ms = timeout_ms
        self.transfer_timeout_ms = transfer_timeout_ms

        auth = (username, password) if username and password else None
        self._client = httpx.AsyncClient(
            auth=auth,
            timeout=httpx.Timeout(timeout_ms / 1000),
            follow_redirects=True,
            verify=ssl_verify,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        settings: WebDAVSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "WebDAVClient":
        """Build a client from settings, resolving the password from keyring.

        Raises:
            ConfigInvalidError: If no URL is configured
        """
        if not settings.url:
            raise ConfigInvalidError("WebDAV URL is not configured")
        return cls(
            settings.url,
            username=settings.username,
            password=settings.get_password() or "",
            timeout_ms=settings.timeout_ms,
            transfer_timeout_ms=settings.transfer_timeout_ms,
            ssl_verify=settings.ssl_verify,
            transport=transport,
        )

    async def close(self) -> None:
        """Close HTTP client connections."""
        await self._client.aclose()

    async def __aenter__(self) -> "WebDAVClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def url_for(self, path: str) -> str:
        """Get full WebDAV URL for a path relative to the base URL."""
        return f"{self.base_url}{quote(path.lstrip('/'), safe='/')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        content: str | bytes | None = None,
        timeout_ms: int | None = None,
    ) -> httpx.Response:
        url = self.url_for(path)
        timeout = (timeout_ms or self.timeout_ms) / 1000

        try:
            response = await asyncio.wait_for(
                self._client.request(
                    method,
                    url,
                    headers=headers,
                    content=content,
                    timeout=timeout,
                ),
                timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise WebDAVTimeoutError(f"{method} {path or '/'} timed out after {timeout:g}s") from e
        except httpx.ProxyError as e:
            raise PolicyRejectedError(f"{method} {path or '/'} rejected by proxy: {e}") from e
        except httpx.NetworkError as e:
            raise NetworkUnreachableError(f"{method} {path or '/'} failed: {e}") from e
        except httpx.HTTPError as e:
            if "cors" in str(e).lower():
                raise PolicyRejectedError(f"{method} {path or '/'} rejected: {e}") from e
            raise UnknownRemoteError(f"{method} {path or '/'} failed: {e}") from e

        if response.is_error:
            message = f"{method} {path or '/'} failed: HTTP {response.status_code}"
            if response.text:
                message += f" - {response.text[:200]}"
            raise error_for_status(response.status_code, message)

        return response

    async def test_connection(self) -> ConnectionTestResult:
        """Test connection with a Depth 0 PROPFIND on the base URL.

        Returns:
            ConnectionTestResult; remote failures are reported, not raised
        """
        try:
            await self._request(
                "PROPFIND",
                "",
                headers={"Depth": "0", "Content-Type": "application/xml"},
            )
        except AndyTabError as e:
            logger.error("WebDAV connection test failed: %s", e)
            message = USER_MESSAGES[e.kind]
            if e.kind is ErrorKind.UNKNOWN:
                message = f"{message}: {e}"
            return ConnectionTestResult(success=False, message=message, kind=e.kind)

        return ConnectionTestResult(success=True, message="Connection successful")

    async def get(self, path: str, timeout_ms: int | None = None) -> str:
        """Download a file and return its text content."""
        response = await self._request("GET", path, timeout_ms=timeout_ms)
        return response.text

    async def put(
        self,
        path: str,
        content: str | bytes,
        content_type: str | None = None,
        timeout_ms: int | None = None,
    ) -> None:
        """Upload a file, replacing any existing one."""
        headers = {"Content-Type": content_type} if content_type else None
        if isinstance(content, str):
            content = content.encode("utf-8")
        await self._request("PUT", path, headers=headers, content=content, timeout_ms=timeout_ms)
        logger.debug("Uploaded %s (%d bytes)", path, len(content))

    async def delete(self, path: str, timeout_ms: int | None = None) -> None:
        await self._request("DELETE", path, timeout_ms=timeout_ms)
        logger.debug("Deleted %s", path)

    async def exists(self, path: str, timeout_ms: int | None = None) -> bool:
        """Check whether a resource exists (any failure counts as missing)."""
        try:
            await self._request("HEAD", path, timeout_ms=timeout_ms)
            return True
        except AndyTabError:
            return False

    async def create_directory(self, path: str, timeout_ms: int | None = None) -> None:
        """Create a collection; an existing one is not an error."""
        try:
            await self._request("MKCOL", path, timeout_ms=timeout_ms)
            logger.debug("Created folder: %s", path)
        except RemoteStoreError as e:
            if e.status_code == 405:  # 405 = already exists
                logger.debug("Folder already exists: %s", path)
                return
            raise

    async def list_directory(self, path: str = "", timeout_ms: int | None = None) -> list[RemoteEntry]:
        """List the direct children of a collection (PROPFIND Depth 1)."""
        response = await self._request(
            "PROPFIND",
            path,
            headers={"Depth": "1", "Content-Type": "application/xml"},
            content=PROPFIND_BODY,
            timeout_ms=timeout_ms,
        )
        return parse_multistatus(response.text, urlsplit(self.url_for(path)).path)

    async def copy(
        self,
        source: str,
        destination: str,
        overwrite: bool = True,
        timeout_ms: int | None = None,
    ) -> None:
        await self._request(
            "COPY",
            source,
            headers={
                "Destination": self.url_for(destination),
                "Overwrite": "T" if overwrite else "F",
            },
            timeout_ms=timeout_ms,
        )

    async def move(
        self,
        source: str,
        destination: str,
        overwrite: bool = True,
        timeout_ms: int | None = None,
    ) -> None:
        await self._request(
            "MOVE",
            source,
            headers={
                "Destination": self.url_for(destination),
                "Overwrite": "T" if overwrite else "F",
            },
            timeout_ms=timeout_ms,
        )
