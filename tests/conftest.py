"""Pytest configuration and shared fixtures."""

import base64
import json
import time
from pathlib import Path
from urllib.parse import quote

import httpx
import pytest

from andytab.core.snapshot import SnapshotCodec
from andytab.core.storage import LocalDataStore
from andytab.core.sync import SyncEngine
from andytab.sources.webdav import WebDAVClient
from andytab.utils.db import KeyValueDB

BASE_URL = "https://dav.example.com/dav/"
BASE_PATH = "/dav/"
USERNAME = "alice"
PASSWORD = "secret"


class FakeWebDAVServer:
    """In-memory WebDAV share served through ``httpx.MockTransport``.

    Paths are stored relative to the share root without leading or trailing
    slashes. ``failures`` maps ``(method, path)`` to a status code returned
    instead of the normal response.
    """

    def __init__(self, username: str = USERNAME, password: str = PASSWORD):
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = {""}
        self.failures: dict[tuple[str, str], int] = {}
        self.requests: list[tuple[str, str]] = []
        self.put_times: dict[str, float] = {}
        token = base64.b64encode(f"{username}:{password}".encode()).decode()
        self.expected_auth = f"Basic {token}"

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def add_file(self, path: str, content: str | dict) -> None:
        if isinstance(content, dict):
            content = json.dumps(content)
        parent = path.rsplit("/", 1)[0] if "/" in path else ""
        self.dirs.add(parent)
        self.files[path] = content.encode("utf-8")

    def read_json(self, path: str) -> dict:
        return json.loads(self.files[path])

    def names_in(self, directory: str = "AndyTab") -> list[str]:
        prefix = f"{directory}/"
        return sorted(
            path[len(prefix):]
            for path in self.files
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        )

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.requests if m == method)

    def _entry_xml(self, path: str, is_directory: bool, size: int = 0) -> str:
        href = quote(f"{BASE_PATH}{path}") + ("/" if is_directory and path else "")
        resourcetype = "<d:collection/>" if is_directory else ""
        length = "" if is_directory else f"<d:getcontentlength>{size}</d:getcontentlength>"
        return (
            "<d:response>"
            f"<d:href>{href}</d:href>"
            "<d:propstat><d:prop>"
            f"<d:resourcetype>{resourcetype}</d:resourcetype>{length}"
            "</d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat>"
            "</d:response>"
        )

    def _propfind(self, path: str, depth: str) -> httpx.Response:
        if path not in self.dirs:
            if path in self.files:
                body = self._entry_xml(path, False, len(self.files[path]))
                return self._multistatus([body])
            return httpx.Response(404)

        responses = [self._entry_xml(path, True)]
        if depth == "1":
            prefix = f"{path}/" if path else ""
            for directory in sorted(self.dirs):
                rest = directory[len(prefix):]
                if directory and directory.startswith(prefix) and rest and "/" not in rest:
                    responses.append(self._entry_xml(directory, True))
            for file_path, content in sorted(self.files.items()):
                rest = file_path[len(prefix):]
                if file_path.startswith(prefix) and "/" not in rest:
                    responses.append(self._entry_xml(file_path, False, len(content)))
        return self._multistatus(responses)

    @staticmethod
    def _multistatus(responses: list[str]) -> httpx.Response:
        xml = '<?xml version="1.0" encoding="utf-8"?><d:multistatus xmlns:d="DAV:">'
        xml += "".join(responses) + "</d:multistatus>"
        return httpx.Response(207, text=xml)

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path[len(BASE_PATH):].strip("/") if request.url.path.startswith(BASE_PATH) else ""
        self.requests.append((method, path))

        if (method, path) in self.failures:
            return httpx.Response(self.failures[(method, path)], text="injected failure")
        if request.headers.get("Authorization") != self.expected_auth:
            return httpx.Response(401)

        if method == "PROPFIND":
            return self._propfind(path, request.headers.get("Depth", "1"))
        if method == "MKCOL":
            if path in self.dirs or path in self.files:
                return httpx.Response(405)
            self.dirs.add(path)
            return httpx.Response(201)
        if method == "PUT":
            parent = path.rsplit("/", 1)[0] if "/" in path else ""
            if parent not in self.dirs:
                return httpx.Response(409)
            self.files[path] = request.content
            self.put_times[path] = time.monotonic()
            return httpx.Response(201)
        if method in ("GET", "HEAD"):
            if path not in self.files:
                return httpx.Response(404)
            return httpx.Response(200, content=self.files[path] if method == "GET" else b"")
        if method == "DELETE":
            if self.files.pop(path, None) is None:
                return httpx.Response(404)
            return httpx.Response(204)
        return httpx.Response(405)


@pytest.fixture
def fake_server() -> FakeWebDAVServer:
    return FakeWebDAVServer()


@pytest.fixture
async def webdav_client(fake_server):
    client = WebDAVClient(BASE_URL, USERNAME, PASSWORD, transport=fake_server.transport)
    yield client
    await client.close()


@pytest.fixture
async def store(tmp_path: Path) -> LocalDataStore:
    data_store = LocalDataStore(KeyValueDB(tmp_path / "store.db"), tmp_path / "offline_cache.json")
    await data_store.initialize()
    return data_store


@pytest.fixture
def reload_calls() -> list[int]:
    return []


@pytest.fixture
async def engine(store, fake_server, reload_calls):
    client = WebDAVClient(BASE_URL, USERNAME, PASSWORD, transport=fake_server.transport)
    sync_engine = SyncEngine(
        store,
        client,
        codec=SnapshotCodec(),
        debounce_seconds=0.05,
        on_reload_required=lambda: reload_calls.append(1),
    )
    yield sync_engine
    await sync_engine.close()
