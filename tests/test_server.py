"""HTTP API tests: a mocked BrowserManager and an executor over FakePage."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from kioskremote.config import Settings
from kioskremote.exceptions import BrowserUnavailableError, PageEvaluationError
from kioskremote.executor import ScriptExecutor
from kioskremote.server import SCRIPT_ID_HEADER, _stream_response, create_app
from tests.conftest import FakePage, settle


@pytest.fixture
def browser_manager():
    manager = MagicMock()
    manager.is_initialized = True
    for name in ("init", "goto", "click", "type", "screenshot", "show", "hide", "cleanup", "restart"):
        setattr(manager, name, AsyncMock())
    manager.init.return_value = True
    manager.screenshot.return_value = b"\x89PNG\r\n\x1a\nfake"
    return manager


@pytest.fixture
def page():
    return FakePage()


@pytest.fixture
def client(browser_manager, page):
    async def get_page():
        return page

    app = create_app(Settings(), browser_manager=browser_manager, executor=ScriptExecutor(get_page))
    with TestClient(app) as c:
        yield c


def _events(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


def test_lifespan_initializes_and_cleans_up(browser_manager, page):
    async def get_page():
        return page

    app = create_app(Settings(), browser_manager=browser_manager, executor=ScriptExecutor(get_page))
    with TestClient(app):
        browser_manager.init.assert_awaited_once()
    browser_manager.cleanup.assert_awaited_once()


def test_root_reports_status(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {"status": "Kiosk remote control running", "browser": True, "activeScripts": 0}


class TestKioskCommands:
    def test_goto(self, client, browser_manager):
        response = client.post("/api/goto", json={"url": "https://example.com"})

        assert response.json() == {"success": True}
        browser_manager.goto.assert_awaited_once_with("https://example.com")

    def test_click_and_type(self, client, browser_manager):
        client.post("/api/click", json={"selector": "#go"})
        client.post("/api/type", json={"selector": "#q", "text": "hello"})

        browser_manager.click.assert_awaited_once_with("#go")
        browser_manager.type.assert_awaited_once_with("#q", "hello")

    def test_missing_field_is_rejected(self, client):
        assert client.post("/api/goto", json={}).status_code == 422

    def test_screenshot_is_png(self, client):
        response = client.get("/api/screenshot")

        assert response.headers["content-type"] == "image/png"
        assert response.content.startswith(b"\x89PNG")

    def test_unavailable_browser_is_503(self, client, browser_manager):
        browser_manager.goto.side_effect = BrowserUnavailableError("Failed to ensure browser and page availability")

        response = client.post("/api/goto", json={"url": "https://example.com"})

        assert response.status_code == 503
        assert "availability" in response.json()["error"]

    def test_show_hide_close_restart(self, client, browser_manager):
        for path in ("/api/browser/show", "/api/browser/hide", "/api/browser/close", "/api/browser/restart"):
            assert client.post(path).json()["success"] is True

        browser_manager.show.assert_awaited_once()
        browser_manager.hide.assert_awaited_once()
        browser_manager.restart.assert_awaited_once()


class TestScripts:
    def test_execute_returns_value(self, client, page):
        page.results["(async () => {\nreturn 2+2\n})()"] = 4

        response = client.post("/api/script/execute", json={"script": "return 2+2"})

        assert response.json() == {"success": True, "result": 4}

    def test_execute_page_error_is_500_with_details(self, client, page):
        page.valid_scripts.add("boom()")
        page.results["boom()"] = PageEvaluationError(
            "ReferenceError: boom is not defined", details={"lineNumber": 0}
        )

        response = client.post("/api/script/execute", json={"script": "boom()"})

        assert response.status_code == 500
        assert response.json() == {
            "error": "ReferenceError: boom is not defined",
            "details": {"lineNumber": 0},
        }

    def test_continuous_streams_until_script_finishes(self, client, page):
        def run(script_id, binding):
            for n in range(3):
                page.call_binding(binding, {"type": "data", "data": n})
            page.call_binding(binding, {"type": "end"})

        page.on_launch = run

        response = client.post("/api/script/continuous", json={"script": "..."})

        script_id = response.headers[SCRIPT_ID_HEADER]
        assert response.headers["content-type"].startswith("text/event-stream")
        assert _events(response.text) == [{"data": n, "scriptId": script_id} for n in range(3)]
        assert client.get("/api/scripts").json() == {"scripts": []}
        assert page.cleaned == [script_id]

    def test_continuous_setup_failure_is_500(self, client, page):
        page.launch_result = False

        response = client.post("/api/script/continuous", json={"script": "..."})

        assert response.status_code == 500
        assert "refused" in response.json()["error"]

    def test_stop_unknown_script(self, client):
        response = client.post("/api/script/stop", json={"scriptId": "script_0_nothing"})

        assert response.json() == {"success": False}


class TestStreamDisconnect:
    @pytest.mark.asyncio
    async def test_background_close_stops_script_whose_stream_never_started(self, page):
        async def get_page():
            return page

        executor = ScriptExecutor(get_page)
        channel, script_id = await executor.execute_continuous("setInterval(() => sendResult(1), 50)")
        response = _stream_response(channel, script_id)

        await response.body_iterator.aclose()
        await response.background()
        await settle()

        assert channel.closed
        assert script_id not in executor.registry
        assert page.cleaned == [script_id]

    @pytest.mark.asyncio
    async def test_client_gone_before_first_chunk(self, page):
        async def get_page():
            return page

        executor = ScriptExecutor(get_page)
        channel, script_id = await executor.execute_continuous("setInterval(() => sendResult(1), 50)")
        response = _stream_response(channel, script_id)
        receive = AsyncMock(return_value={"type": "http.disconnect"})
        send = AsyncMock()

        await response({"type": "http", "method": "POST", "path": "/api/script/continuous"}, receive, send)
        await settle()

        assert channel.closed
        assert script_id not in executor.registry
        assert page.cleaned == [script_id]
