"""
Tests for the single download building blocks.

Test coverage:
- Run identity generation and uniqueness
- Run directory creation and fatal failures
- Content persistence
- HttpFetcher against a local aiohttp server (success, HTTP errors,
  timeouts, connection errors)
"""

import asyncio
import re

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from download_errors import FatalSetupError, FetchError, PersistError
from single_download import (
    HttpFetcher,
    build_session,
    create_run_directory,
    make_run_identity,
    output_file_path,
    sanitize_label,
    save_content,
)


class TestRunIdentity:
    """Test run identity generation."""

    def test_label_is_prefixed(self):
        identity = make_run_identity("products")
        assert re.fullmatch(r"products-\d{8}T\d{6}-[0-9a-f]{8}", identity)

    def test_no_label_uses_token_only(self):
        identity = make_run_identity()
        assert re.fullmatch(r"\d{8}T\d{6}-[0-9a-f]{8}", identity)

    def test_same_label_never_collides(self):
        identities = {make_run_identity("same") for _ in range(50)}
        assert len(identities) == 50

    def test_label_is_sanitized(self):
        assert sanitize_label(" my run/2024 ") == "my_run_2024"
        assert make_run_identity("a b").startswith("a_b-")

    def test_unusable_label_falls_back_to_token(self):
        assert re.fullmatch(r"\d{8}T\d{6}-[0-9a-f]{8}", make_run_identity("///"))


class TestRunDirectory:
    """Test run directory layout."""

    def test_creates_directory_under_store(self, tmp_path):
        out_dir = create_run_directory(str(tmp_path / "store"), "run-1")

        assert out_dir == tmp_path / "store" / "run-1"
        assert out_dir.is_dir()

    def test_existing_directory_is_fatal(self, tmp_path):
        create_run_directory(str(tmp_path), "run-1")

        with pytest.raises(FatalSetupError):
            create_run_directory(str(tmp_path), "run-1")

    def test_store_that_is_a_file_is_fatal(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(FatalSetupError, match="Cannot create output directory"):
            create_run_directory(str(blocker), "run-1")

    def test_output_file_path(self, tmp_path):
        assert output_file_path(tmp_path, "run-1", 7) == tmp_path / "run-1-7"


class TestSaveContent:
    """Test writing fetched content."""

    def test_writes_exact_bytes(self, tmp_path):
        content = b"\x00\x01binary\xffdata"
        path = tmp_path / "run-1"

        written = save_content(content, path)

        assert written == len(content)
        assert path.read_bytes() == content

    def test_write_failure_raises_persist_error(self, tmp_path):
        path = tmp_path / "missing-dir" / "run-1"

        with pytest.raises(PersistError) as exc:
            save_content(b"OK", path)

        assert exc.value.path == str(path)
        assert exc.value.stage == "persist"


async def _ok(request):
    return web.Response(body=b"payload-bytes")


async def _no_content(request):
    return web.Response(status=204)


async def _missing(request):
    return web.Response(status=404, text="nope")


async def _broken(request):
    return web.Response(status=503, text="down")


async def _slow(request):
    await asyncio.sleep(1.0)
    return web.Response(body=b"late")


@pytest_asyncio.fixture
async def http_server():
    """Local aiohttp server with a handful of canned endpoints."""
    app = web.Application()
    app.router.add_get("/ok", _ok)
    app.router.add_get("/empty", _no_content)
    app.router.add_get("/missing", _missing)
    app.router.add_get("/broken", _broken)
    app.router.add_get("/slow", _slow)
    async with TestServer(app) as server:
        yield server


class TestHttpFetcher:
    """Test HttpFetcher against a real local server."""

    @pytest.mark.asyncio
    async def test_success_returns_body(self, http_server):
        async with build_session(timeout=5) as session:
            content = await HttpFetcher(session, timeout=5).fetch(str(http_server.make_url("/ok")))

        assert content == b"payload-bytes"

    @pytest.mark.asyncio
    async def test_any_2xx_is_success(self, http_server):
        async with build_session(timeout=5) as session:
            content = await HttpFetcher(session, timeout=5).fetch(str(http_server.make_url("/empty")))

        assert content == b""

    @pytest.mark.asyncio
    async def test_404_raises_fetch_error(self, http_server):
        async with build_session(timeout=5) as session:
            with pytest.raises(FetchError) as exc:
                await HttpFetcher(session, timeout=5).fetch(str(http_server.make_url("/missing")))

        assert exc.value.status_code == 404
        assert str(exc.value) == "HTTP 404: Not Found"

    @pytest.mark.asyncio
    async def test_5xx_raises_fetch_error(self, http_server):
        async with build_session(timeout=5) as session:
            with pytest.raises(FetchError) as exc:
                await HttpFetcher(session, timeout=5).fetch(str(http_server.make_url("/broken")))

        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout_raises_fetch_error(self, http_server):
        async with build_session(timeout=5) as session:
            with pytest.raises(FetchError) as exc:
                await HttpFetcher(session, timeout=0.2).fetch(str(http_server.make_url("/slow")))

        assert exc.value.status_code == 408
        assert str(exc.value) == "Request Timeout"

    @pytest.mark.asyncio
    async def test_connection_refused_raises_fetch_error(self, unused_tcp_port):
        async with build_session(timeout=5) as session:
            with pytest.raises(FetchError) as exc:
                await HttpFetcher(session, timeout=5).fetch(f"http://127.0.0.1:{unused_tcp_port}/")

        assert exc.value.status_code is None
        assert str(exc.value).startswith("Connection Error")

    @pytest.mark.asyncio
    async def test_malformed_url_raises_fetch_error(self):
        async with build_session(timeout=5) as session:
            with pytest.raises(FetchError) as exc:
                await HttpFetcher(session, timeout=5).fetch("dummyUrl1")

        assert exc.value.stage == "fetch"

    @pytest.mark.asyncio
    async def test_session_sets_user_agent(self):
        async with build_session(timeout=5, insecure=True) as session:
            assert "FLOW-DC" in session.headers["User-Agent"]
            assert isinstance(session.connector, aiohttp.TCPConnector)
