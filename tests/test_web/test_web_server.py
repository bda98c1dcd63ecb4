import asyncio

import pytest
from aiohttp import test_utils

from gitwright.agent import ChatAgent
from gitwright.config import Config
from gitwright.exceptions import GitHubAPIError, SandboxError
from gitwright.integrations.sandbox import ExecResult, LocalSandbox
from gitwright.llm import LLMProvider, LLMResponse, TextChunk
from gitwright.session import SessionManager
from gitwright.tools.registry import ToolRegistry
from gitwright.tools.weather import GetLocalTimeTool
from gitwright.web_server import WebServer


class EchoProvider(LLMProvider):
    async def complete(self, messages, tools=None, temperature=None, max_tokens=None):
        return LLMResponse(content="")

    async def stream(self, messages, tools=None, temperature=None, max_tokens=None):
        yield TextChunk(f"echo: {messages[-1].content}")


class FakeGitHub:
    def __init__(self, repos=None, error=None):
        self.repos = repos or []
        self.error = error
        self.closed = False

    async def list_repos_for_authenticated_user(self, per_page=30):
        if self.error is not None:
            raise self.error
        return self.repos

    async def close(self):
        self.closed = True


class FakeSandbox:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.commands: list[str] = []

    async def exec(self, command, timeout=None):
        self.commands.append(command)
        if self.error is not None:
            raise self.error
        return self.result

    async def close(self):
        return None


def _server(tmp_path, sandbox=None, github=None, config=None) -> WebServer:
    config = config or Config()
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    registry = ToolRegistry()
    registry.register(GetLocalTimeTool())
    agent = ChatAgent(
        provider=EchoProvider(),
        registry=registry,
        session_manager=manager,
        sandbox=sandbox or LocalSandbox(tmp_path / "workspace"),
        config=config,
    )
    return WebServer(
        config,
        agent=agent,
        session_manager=manager,
        github_factory=(lambda token: github) if github is not None else None,
    )


@pytest.mark.asyncio
async def test_check_openai_key_reads_environment(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    server = _server(tmp_path)
    try:
        async with test_utils.TestClient(test_utils.TestServer(server.create_app())) as client:
            response = await client.get("/check-open-ai-key")
            assert await response.json() == {"success": False}

            monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
            response = await client.get("/check-open-ai-key")
            assert await response.json() == {"success": True}
    finally:
        await server.shutdown()


@pytest.mark.asyncio
async def test_get_repos_requires_token(tmp_path):
    server = _server(tmp_path, github=FakeGitHub())
    try:
        async with test_utils.TestClient(test_utils.TestServer(server.create_app())) as client:
            response = await client.post("/api/getRepos", json={})
            assert response.status == 400
            assert "accessToken" in (await response.json())["error"]
    finally:
        await server.shutdown()


@pytest.mark.asyncio
async def test_get_repos_returns_repositories_with_open_issues(tmp_path):
    github = FakeGitHub(repos=[
        {"name": "busy", "has_issues": True, "open_issues": 3},
        {"name": "quiet", "has_issues": True, "open_issues": 0},
        {"name": "no-tracker", "has_issues": False, "open_issues": 5},
    ])
    server = _server(tmp_path, github=github)
    try:
        async with test_utils.TestClient(test_utils.TestServer(server.create_app())) as client:
            response = await client.post("/api/getRepos", json={"accessToken": "ghp_test"})
            assert response.status == 200
            assert [repo["name"] for repo in await response.json()] == ["busy"]
        assert github.closed
    finally:
        await server.shutdown()


@pytest.mark.asyncio
async def test_get_repos_maps_github_errors(tmp_path):
    github = FakeGitHub(error=GitHubAPIError("Bad credentials", status_code=401))
    server = _server(tmp_path, github=github)
    try:
        async with test_utils.TestClient(test_utils.TestServer(server.create_app())) as client:
            response = await client.post("/api/getRepos", json={"accessToken": "ghp_wrong"})
            assert response.status == 401
            assert "Bad credentials" in (await response.json())["error"]
    finally:
        await server.shutdown()


@pytest.mark.asyncio
async def test_list_workspace_reports_result_and_errors(tmp_path):
    sandbox = FakeSandbox(result=ExecResult(success=True, stdout="/workspace\n"))
    server = _server(tmp_path, sandbox=sandbox)
    try:
        async with test_utils.TestClient(test_utils.TestServer(server.create_app())) as client:
            response = await client.get("/api/list")
            assert await response.json() == {"result": "/workspace\n"}

            sandbox.result = ExecResult(success=False, stderr="no such directory")
            response = await client.get("/api/list")
            assert await response.json() == {"error": "no such directory"}

            sandbox.error = SandboxError("sandbox unreachable")
            response = await client.get("/api/list")
            assert response.status == 502
        assert sandbox.commands == ["pwd", "pwd", "pwd"]
    finally:
        await server.shutdown()


@pytest.mark.asyncio
async def test_websocket_chat_streams_and_replays(tmp_path):
    server = _server(tmp_path)
    try:
        async with test_utils.TestClient(test_utils.TestServer(server.create_app())) as client:
            ws = await client.ws_connect("/ws/demo")
            assert await ws.receive_json() == {"type": "replay_done"}

            await ws.send_json({"type": "init", "owner": "octo", "repoName": "hello", "accessToken": "ghp_x"})
            ready = await ws.receive_json()
            assert ready["type"] == "ready"
            session_id = ready["sessionId"]

            await ws.send_json({"type": "chat", "content": "hi"})
            delta = await ws.receive_json()
            assert delta["type"] == "text-delta"
            assert delta["delta"] == "echo: hi"
            finish = await ws.receive_json()
            assert finish == {"type": "finish", "messageId": delta["messageId"]}

            await ws.send_json({"type": "dance"})
            assert (await ws.receive_json())["type"] == "error"
            await ws.close()

            stored = await server.session_manager.load_session(session_id)
            assert stored.repository["owner"] == "octo"
            assert stored.access_token == "ghp_x"

            ws = await client.ws_connect("/ws/demo")
            replayed = [await ws.receive_json() for _ in range(3)]
            assert [event["type"] for event in replayed] == ["message", "message", "replay_done"]
            assert all(event["replay"] for event in replayed[:2])
            assert replayed[1]["message"]["id"] == delta["messageId"]
            await ws.close()
    finally:
        await server.shutdown()


@pytest.mark.asyncio
async def test_websocket_decision_requires_call_id(tmp_path):
    server = _server(tmp_path)
    try:
        async with test_utils.TestClient(test_utils.TestServer(server.create_app())) as client:
            ws = await client.ws_connect("/ws/demo")
            await ws.receive_json()

            await ws.send_json({"type": "tool_decision", "decision": "approve"})
            error = await ws.receive_json()
            assert error == {"type": "error", "message": "tool_decision requires callId"}

            await ws.send_str("not json")
            assert await ws.receive_json() == {"type": "error", "message": "Invalid JSON"}
            await ws.close()
    finally:
        await server.shutdown()


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_disconnect_releases_session_state(tmp_path):
    server = _server(tmp_path)
    try:
        async with test_utils.TestClient(test_utils.TestServer(server.create_app())) as client:
            ws = await client.ws_connect("/ws/demo")
            await ws.receive_json()
            await ws.send_json({"type": "chat", "content": "hi"})
            assert (await ws.receive_json())["type"] == "text-delta"
            assert (await ws.receive_json())["type"] == "finish"
            assert server._sessions

            await ws.close()
            await _wait_until(lambda: not server._sessions)

            assert server._session_ids_by_name == {}
            assert server.clients == {}
            assert server._abort_events == {}
            assert server.agent._locks == {}
            assert server.agent._ledgers == {}

            ws = await client.ws_connect("/ws/demo")
            replayed = [await ws.receive_json() for _ in range(3)]
            assert [event["type"] for event in replayed] == ["message", "message", "replay_done"]
            await ws.close()
    finally:
        await server.shutdown()
