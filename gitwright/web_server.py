"""Web server: per-session chat websocket plus a small repository API."""

import asyncio
import json
import signal
import sys
from collections.abc import Callable
from typing import Any

from aiohttp import web

from gitwright.agent import ChatAgent
from gitwright.config import Config, get_config, set_config
from gitwright.exceptions import (
    ConfigurationError,
    GitHubAPIError,
    GitwrightError,
    SandboxError,
    SessionBusyError,
)
from gitwright.integrations.github import GitHubClient, repos_with_open_issues
from gitwright.logging import configure_logging, get_logger
from gitwright.scheduler import scheduler_loop
from gitwright.session import Session, SessionManager, get_session_manager
from gitwright.stream import ErrorEvent, MessageEvent, StreamWriter

log = get_logger(__name__)


class WebServer:
    """Gitwright web server."""

    def __init__(
        self,
        config: Config,
        agent: ChatAgent | None = None,
        session_manager: SessionManager | None = None,
        github_factory: Callable[[str], GitHubClient] | None = None,
    ):
        self.config = config
        self.session_manager = session_manager or get_session_manager()
        self.agent = agent or ChatAgent(config=config, session_manager=self.session_manager)
        self.github_factory = github_factory or (lambda token: GitHubClient.from_config(token, config))
        # Live sockets and loaded sessions, keyed by session id.
        self.clients: dict[str, set[web.WebSocketResponse]] = {}
        self._sessions: dict[str, Session] = {}
        self._session_ids_by_name: dict[str, str] = {}
        self._abort_events: dict[str, set[asyncio.Event]] = {}
        self._turn_tasks: set[asyncio.Task[None]] = set()
        self._scheduler_task: asyncio.Task[None] | None = None

    # ── Session helpers ──────────────────────────────────────────────

    async def _session_by_name(self, name: str) -> Session:
        session_id = self._session_ids_by_name.get(name)
        if session_id and session_id in self._sessions:
            return self._sessions[session_id]
        session = await self.session_manager.get_or_create_session(name)
        self._sessions[session.id] = session
        self._session_ids_by_name[name] = session.id
        return session

    async def _session_by_id(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        session = await self.session_manager.load_session(session_id)
        if session is not None:
            self._sessions[session.id] = session
            self._session_ids_by_name.setdefault(session.name, session.id)
        return session

    async def _release_if_idle(self, session_id: str) -> None:
        """Forget a session once no socket is attached and no turn or executor is running."""
        if self.clients.get(session_id) or self._abort_events.get(session_id):
            return
        if not await self.agent.release_session(session_id):
            return
        self.clients.pop(session_id, None)
        self._abort_events.pop(session_id, None)
        session = self._sessions.pop(session_id, None)
        if session is not None and self._session_ids_by_name.get(session.name) == session_id:
            del self._session_ids_by_name[session.name]

    # ── Delivery ─────────────────────────────────────────────────────

    async def _send(self, ws: web.WebSocketResponse, msg: dict[str, Any]) -> None:
        """Send a message to a single WebSocket client."""
        if not ws.closed:
            await ws.send_str(json.dumps(msg, default=str))

    async def _broadcast(self, session_id: str, msg: dict[str, Any]) -> None:
        """Send a message to every client attached to a session."""
        sockets = self.clients.get(session_id, set())
        for ws in list(sockets):
            try:
                await self._send(ws, msg)
            except (ConnectionError, RuntimeError) as e:
                log.warning("Dropping websocket after send failure", session_id=session_id, error=str(e))
                sockets.discard(ws)

    def writer_for(self, session_id: str) -> StreamWriter:
        async def send(payload: dict[str, Any]) -> None:
            await self._broadcast(session_id, payload)

        return StreamWriter(
            send,
            buffer_size=self.config.stream.buffer_size,
            emit_timeout=self.config.stream.emit_timeout,
        )

    # ── WebSocket handler ────────────────────────────────────────────

    async def ws_handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(max_msg_size=4 * 1024 * 1024)
        await ws.prepare(request)

        session = await self._session_by_name(request.match_info["session"])
        self.clients.setdefault(session.id, set()).add(ws)
        log.info("Client connected", session_id=session.id, clients=len(self.clients[session.id]))

        # Replay the stored log for the connecting client
        for message in session.messages:
            await self._send(ws, MessageEvent(message=message.to_dict(), replay=True).to_wire())
        await self._send(ws, {"type": "replay_done"})

        try:
            async for raw_msg in ws:
                if raw_msg.type == web.WSMsgType.TEXT:
                    try:
                        data = json.loads(raw_msg.data)
                    except json.JSONDecodeError:
                        await self._send(ws, ErrorEvent(message="Invalid JSON").to_wire())
                        continue
                    if not isinstance(data, dict):
                        await self._send(ws, ErrorEvent(message="Expected a JSON object").to_wire())
                        continue
                    await self._handle_ws_message(ws, session, data)
                elif raw_msg.type == web.WSMsgType.ERROR:
                    log.error("WebSocket error", error=str(ws.exception()))
        finally:
            self.clients.get(session.id, set()).discard(ws)
            log.info("Client disconnected", session_id=session.id)
            await self._release_if_idle(session.id)

        return ws

    async def _handle_ws_message(
        self, ws: web.WebSocketResponse, session: Session, data: dict[str, Any]
    ) -> None:
        """Dispatch incoming WebSocket messages."""
        msg_type = data.get("type", "")

        if msg_type == "init":
            session.set_repository(
                owner=str(data.get("owner", "")),
                repo_name=str(data.get("repoName", "")),
                clone_url=str(data.get("cloneUrl", "")),
            )
            if "accessToken" in data:
                session.set_access_token(str(data.get("accessToken") or ""))
            await self.session_manager.save_session(session)
            await self._send(ws, {"type": "ready", "sessionId": session.id})

        elif msg_type == "chat":
            content = str(data.get("content", "")).strip()
            if not content:
                return
            self._start_turn(ws, session, lambda writer, abort: self.agent.submit_user_message(
                session, content, writer=writer, abort_event=abort,
            ))

        elif msg_type == "tool_decision":
            call_id = str(data.get("callId", "")).strip()
            if not call_id:
                await self._send(ws, ErrorEvent(message="tool_decision requires callId").to_wire())
                return
            decision = data.get("decision")
            self._start_turn(ws, session, lambda writer, abort: self.agent.submit_decision(
                session, call_id, decision, writer=writer, abort_event=abort,
            ))

        elif msg_type == "cancel":
            for event in self._abort_events.get(session.id, set()):
                event.set()

        else:
            await self._send(ws, ErrorEvent(message=f"Unknown message type: {msg_type}").to_wire())

    def _start_turn(self, ws: web.WebSocketResponse, session: Session, run: Callable[..., Any]) -> None:
        task = asyncio.create_task(self._run_turn(ws, session, run))
        self._turn_tasks.add(task)
        task.add_done_callback(self._turn_tasks.discard)

    async def _run_turn(self, ws: web.WebSocketResponse, session: Session, run: Callable[..., Any]) -> None:
        abort_event = asyncio.Event()
        events = self._abort_events.setdefault(session.id, set())
        events.add(abort_event)
        writer = self.writer_for(session.id)
        try:
            await run(writer, abort_event)
        except SessionBusyError as e:
            await self._send(ws, ErrorEvent(message=str(e)).to_wire())
        except GitwrightError as e:
            log.error("Turn failed", session_id=session.id, error=str(e))
            await writer.emit(ErrorEvent(message=f"Error: {e}"))
        except Exception as e:
            log.exception("Turn crashed", session_id=session.id)
            await writer.emit(ErrorEvent(message=f"Error: {e}"))
        finally:
            events.discard(abort_event)
            await writer.close()
            if writer.error is not None:
                log.info("Turn finished without a live client", session_id=session.id, error=str(writer.error))
            await self._release_if_idle(session.id)

    # ── REST API ─────────────────────────────────────────────────────

    async def get_repos(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"error": "Invalid JSON"}, status=400)
        token = str((body or {}).get("accessToken") or "").strip()
        if not token:
            return web.json_response({"error": "accessToken is required"}, status=400)

        client = self.github_factory(token)
        try:
            repos = await client.list_repos_for_authenticated_user(per_page=100)
        except GitHubAPIError as e:
            status = e.status_code if e.status_code and e.status_code >= 400 else 502
            return web.json_response({"error": str(e)}, status=status)
        finally:
            await client.close()
        return web.json_response(repos_with_open_issues(repos))

    async def list_workspace(self, request: web.Request) -> web.Response:
        try:
            result = await self.agent.sandbox.exec("pwd")
        except SandboxError as e:
            log.error("Sandbox unavailable", error=str(e))
            return web.json_response({"error": str(e)}, status=502)
        if result.success:
            return web.json_response({"result": result.stdout})
        return web.json_response({"error": result.stderr})

    async def check_openai_key(self, request: web.Request) -> web.Response:
        return web.json_response({"success": bool(self.config.resolved_model_api_key())})

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws/{session}", self.ws_handler)
        app.router.add_post("/api/getRepos", self.get_repos)
        app.router.add_get("/api/list", self.list_workspace)
        app.router.add_get("/check-open-ai-key", self.check_openai_key)
        return app

    # ── Lifecycle ────────────────────────────────────────────────────

    def start_scheduler(self) -> None:
        if not self.config.scheduler.enabled or self._scheduler_task is not None:
            return
        self._scheduler_task = asyncio.create_task(scheduler_loop(
            self.agent,
            self.session_manager,
            poll_seconds=self.config.scheduler.poll_seconds,
            writer_for=self.writer_for,
            load_session=self._session_by_id,
            release_session=self._release_if_idle,
        ))
        log.info("Scheduler started")

    async def shutdown(self) -> None:
        if self._scheduler_task is not None and not self._scheduler_task.done():
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
        for task in list(self._turn_tasks):
            task.cancel()
        if self._turn_tasks:
            await asyncio.gather(*self._turn_tasks, return_exceptions=True)
        # Executors outlive their cancelled turns and still write to the store.
        await self.agent.wait_for_executions()
        for sockets in self.clients.values():
            for ws in list(sockets):
                await ws.close()
        self.clients.clear()
        await self.agent.close()
        await self.session_manager.close()


async def _run_server(config: Config) -> None:
    """Start the web server."""
    server = WebServer(config)
    loop = asyncio.get_running_loop()

    # Stop event: set by signal handler to trigger graceful shutdown.
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if not stop_event.is_set():
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except (NotImplementedError, OSError):
            pass

    app = server.create_app()
    runner = web.AppRunner(app)
    await runner.setup()

    host = config.web.host
    port = config.web.port
    site = web.TCPSite(runner, host, port)
    await site.start()

    print(f"\n  Gitwright running at http://{host}:{port}")
    if not config.resolved_model_api_key() and config.model.provider == "openai":
        log.warning("No OpenAI API key configured; set OPENAI_API_KEY or model.api_key")
    print("  Press Ctrl+C to stop.\n")

    server.start_scheduler()
    await stop_event.wait()

    print("\nShutting down...")
    await server.shutdown()
    await runner.cleanup()


def run_web_server(config: Config) -> None:
    """Entry point for running the web server."""
    try:
        asyncio.run(_run_server(config))
    except KeyboardInterrupt:
        pass


def main() -> None:
    """Standalone entry point for gitwright-web."""
    try:
        cfg = Config.load()
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)
    set_config(cfg)
    configure_logging()

    try:
        run_web_server(get_config())
    except KeyboardInterrupt:
        print("\nWeb server stopped.")
    except Exception as e:
        print(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
