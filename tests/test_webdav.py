"""Tests for the WebDAV client."""

import asyncio
import time

import httpx
import pytest

from andytab.core.config import WebDAVSettings
from andytab.core.errors import (
    AuthFailedError,
    ConfigInvalidError,
    ErrorKind,
    ForbiddenError,
    NetworkUnreachableError,
    NotFoundError,
    ParseFailedError,
    PolicyRejectedError,
    ServerError,
    UnknownRemoteError,
    WebDAVTimeoutError,
)
from andytab.sources.webdav import WebDAVClient, parse_multistatus

from conftest import BASE_URL, PASSWORD, USERNAME


def client_for(handler, **kwargs) -> WebDAVClient:
    return WebDAVClient(BASE_URL, USERNAME, PASSWORD, transport=httpx.MockTransport(handler), **kwargs)


class TestConstruction:
    @pytest.mark.parametrize("url", ["", None, "ftp://dav.example.com/", "dav.example.com"])
    def test_rejects_invalid_url(self, url):
        with pytest.raises(ConfigInvalidError):
            WebDAVClient(url)

    def test_from_config_requires_url(self):
        with pytest.raises(ConfigInvalidError):
            WebDAVClient.from_config(WebDAVSettings())

    def test_base_url_normalized(self):
        client = WebDAVClient("https://dav.example.com/dav")
        assert client.base_url == "https://dav.example.com/dav/"
        assert client.url_for("AndyTab/a b.json") == "https://dav.example.com/dav/AndyTab/a%20b.json"


class TestStatusMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error_type,kind",
        [
            (401, AuthFailedError, ErrorKind.AUTH_FAILED),
            (403, ForbiddenError, ErrorKind.FORBIDDEN),
            (404, NotFoundError, ErrorKind.NOT_FOUND),
            (500, ServerError, ErrorKind.SERVER_ERROR),
            (503, ServerError, ErrorKind.SERVER_ERROR),
            (418, UnknownRemoteError, ErrorKind.UNKNOWN),
        ],
    )
    async def test_http_errors_are_typed(self, status, error_type, kind):
        client = client_for(lambda request: httpx.Response(status))
        try:
            with pytest.raises(error_type) as exc_info:
                await client.get("AndyTab/file.json")
        finally:
            await client.close()

        assert exc_info.value.kind is kind
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_connect_error_is_network_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with client_for(handler) as client:
            with pytest.raises(NetworkUnreachableError):
                await client.get("AndyTab/file.json")

    @pytest.mark.asyncio
    async def test_cors_failure_is_policy_rejected(self):
        def handler(request):
            raise httpx.RemoteProtocolError("blocked by CORS policy", request=request)

        async with client_for(handler) as client:
            with pytest.raises(PolicyRejectedError):
                await client.get("AndyTab/file.json")


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_hanging_server_times_out_without_blocking_others(self):
        async def hanging(request):
            await asyncio.sleep(30)
            return httpx.Response(200)

        other_finished = []

        async def other_work():
            await asyncio.sleep(0.01)
            other_finished.append(time.monotonic())

        started = time.monotonic()
        async with client_for(hanging, timeout_ms=200) as client:
            results = await asyncio.gather(
                client.get("AndyTab/file.json"),
                other_work(),
                return_exceptions=True,
            )
        elapsed = time.monotonic() - started

        assert isinstance(results[0], WebDAVTimeoutError)
        assert results[0].kind is ErrorKind.TIMEOUT
        assert other_finished and other_finished[0] - started < 0.2
        assert elapsed < 2

    @pytest.mark.asyncio
    async def test_per_call_timeout_override(self):
        async def slow(request):
            await asyncio.sleep(0.3)
            return httpx.Response(200, text="ok")

        async with client_for(slow, timeout_ms=50) as client:
            with pytest.raises(WebDAVTimeoutError):
                await client.get("AndyTab/file.json")
            assert await client.get("AndyTab/file.json", timeout_ms=2000) == "ok"


class TestOperations:
    @pytest.mark.asyncio
    async def test_put_get_delete(self, webdav_client, fake_server):
        fake_server.dirs.add("AndyTab")

        await webdav_client.put("AndyTab/notes.json", '{"notes": "héllo"}', content_type="application/json")
        assert fake_server.files["AndyTab/notes.json"] == '{"notes": "héllo"}'.encode("utf-8")
        assert await webdav_client.get("AndyTab/notes.json") == '{"notes": "héllo"}'

        await webdav_client.delete("AndyTab/notes.json")
        assert "AndyTab/notes.json" not in fake_server.files

    @pytest.mark.asyncio
    async def test_sends_basic_auth(self, fake_server):
        async with WebDAVClient(BASE_URL, USERNAME, "wrong", transport=fake_server.transport) as client:
            with pytest.raises(AuthFailedError):
                await client.list_directory()

    @pytest.mark.asyncio
    async def test_no_auth_without_password(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("Authorization"))
            return httpx.Response(200, text="")

        async with WebDAVClient(BASE_URL, USERNAME, "", transport=httpx.MockTransport(handler)) as client:
            await client.get("x.json")

        assert seen == [None]

    @pytest.mark.asyncio
    async def test_exists(self, webdav_client, fake_server):
        fake_server.add_file("AndyTab/a.json", "{}")
        assert await webdav_client.exists("AndyTab/a.json") is True
        assert await webdav_client.exists("AndyTab/missing.json") is False

    @pytest.mark.asyncio
    async def test_create_directory_tolerates_existing(self, webdav_client, fake_server):
        await webdav_client.create_directory("AndyTab")
        await webdav_client.create_directory("AndyTab")

        assert "AndyTab" in fake_server.dirs
        assert fake_server.count("MKCOL") == 2

    @pytest.mark.asyncio
    async def test_create_directory_raises_other_errors(self, webdav_client, fake_server):
        fake_server.failures[("MKCOL", "AndyTab")] = 500
        with pytest.raises(ServerError):
            await webdav_client.create_directory("AndyTab")

    @pytest.mark.asyncio
    async def test_list_directory_excludes_self(self, webdav_client, fake_server):
        fake_server.add_file("AndyTab/bookmarks_sync_2024-01-01_1000.json", "{}")
        fake_server.add_file("AndyTab/my notes.json", "[1, 2]")
        fake_server.dirs.add("AndyTab/old")

        entries = await webdav_client.list_directory("AndyTab")
        by_name = {entry.name: entry for entry in entries}

        assert set(by_name) == {"bookmarks_sync_2024-01-01_1000.json", "my notes.json", "old"}
        assert by_name["old"].is_directory is True
        assert by_name["my notes.json"].is_directory is False
        assert by_name["my notes.json"].size == 6

    @pytest.mark.asyncio
    async def test_copy_and_move_headers(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.headers["Destination"], request.headers["Overwrite"]))
            return httpx.Response(201)

        async with client_for(handler) as client:
            await client.copy("AndyTab/a.json", "AndyTab/b.json")
            await client.move("AndyTab/b.json", "AndyTab/c.json", overwrite=False)

        assert seen == [
            ("COPY", f"{BASE_URL}AndyTab/b.json", "T"),
            ("MOVE", f"{BASE_URL}AndyTab/c.json", "F"),
        ]


class TestConnectionTest:
    @pytest.mark.asyncio
    async def test_success(self, webdav_client, fake_server):
        result = await webdav_client.test_connection()

        assert result.success is True
        assert fake_server.requests == [("PROPFIND", "")]

    @pytest.mark.asyncio
    async def test_failure_reports_kind_and_message(self, fake_server):
        async with WebDAVClient(BASE_URL, USERNAME, "wrong", transport=fake_server.transport) as client:
            result = await client.test_connection()

        assert result.success is False
        assert result.kind is ErrorKind.AUTH_FAILED
        assert "Authentication failed" in result.message

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self):
        async def hanging(request):
            await asyncio.sleep(30)
            return httpx.Response(207)

        async with client_for(hanging, timeout_ms=50) as client:
            result = await client.test_connection()

        assert result.success is False
        assert result.kind is ErrorKind.TIMEOUT


class TestParseMultistatus:
    def test_skips_markers_and_decodes_names(self):
        xml = """<?xml version="1.0"?>
        <d:multistatus xmlns:d="DAV:">
            <d:response><d:href>/dav/AndyTab/</d:href>
                <d:propstat><d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop></d:propstat>
            </d:response>
            <d:response><d:href>.</d:href></d:response>
            <d:response><d:href>/dav/AndyTab/caf%C3%A9.json</d:href>
                <d:propstat><d:prop><d:resourcetype/><d:getcontentlength>12</d:getcontentlength></d:prop></d:propstat>
            </d:response>
        </d:multistatus>"""

        entries = parse_multistatus(xml, "/dav/AndyTab")

        assert len(entries) == 1
        assert entries[0].name == "café.json"
        assert entries[0].size == 12
        assert entries[0].is_directory is False

    def test_malformed_xml(self):
        with pytest.raises(ParseFailedError):
            parse_multistatus("<d:multistatus", "/dav/")
