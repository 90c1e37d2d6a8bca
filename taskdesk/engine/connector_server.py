"""Callback endpoint the subprocess backend connects back to.

Each backend opens a websocket at ``/connector`` and announces itself
with an ``init`` message naming its task, source and the actions it
listens to. Later messages on the same socket are routed to that task.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import WSMsgType, web

from .connector import WebSocketConnector
from .models import ContextFile, PromptContext, QuestionData
from .task import Task
from .task_registry import TaskRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[Task, dict[str, Any]], Awaitable[None]]


class ConnectorServer:
    """aiohttp app that turns backend websockets into task connectors."""

    def __init__(self, registry: TaskRegistry, host: str | None = None, port: int | None = None) -> None:
        engine = registry.config.engine
        self._registry = registry
        self._host = host or engine.connector_host
        self._port = engine.connector_port if port is None else port
        self._runner: web.AppRunner | None = None
        self._background: set[asyncio.Task] = set()
        self._handlers: dict[str, Handler] = {
            "response": self._on_response,
            "prompt-finished": self._on_prompt_finished,
            "ask-question": self._on_ask_question,
            "add-file": self._on_add_file,
            "drop-file": self._on_drop_file,
            "set-models": self._on_set_models,
            "update-context-files": self._on_update_context_files,
            "tokens-info": self._on_tokens_info,
            "update-repo-map": self._on_update_repo_map,
            "log": self._on_log,
        }
        self._app = self.build_app()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._request_logging_middleware])
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/connector", self._handle_ws)
        return app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-taskdesk-request-id", str(uuid.uuid4())[:8])
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.debug(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Lifecycle ──

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("Connector server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        for bg in list(self._background):
            bg.cancel()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Connector server stopped")

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "tasks": len(self._registry.list_tasks()),
        })

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        task: Task | None = None
        connector: WebSocketConnector | None = None
        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.warning("Connector websocket error: %s", ws.exception())
                    break
                if msg.type != WSMsgType.TEXT:
                    continue
                try:
                    message = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Ignoring malformed connector message: %.200s", msg.data)
                    continue

                action = message.get("action")
                if action == "init":
                    if connector is not None:
                        logger.warning("Ignoring repeated init on connector %r", connector)
                        continue
                    task, connector = self._register(ws, message)
                    continue
                if task is None:
                    logger.warning("Ignoring %s before init", action)
                    continue
                handler = self._handlers.get(action)
                if handler is None:
                    logger.debug("Unhandled connector action %s for task %s", action, task.id)
                    continue
                await handler(task, message)
        finally:
            if connector is not None and task is not None:
                logger.info("Connector %r disconnected", connector)
                connector.close()
                task.remove_connector(connector)
        return ws

    def _register(self, ws: web.WebSocketResponse, message: dict[str, Any]) -> tuple[Task, WebSocketConnector]:
        base_dir = message.get("baseDir", "")
        task_id = message.get("taskId", "")
        task = self._registry.get_or_create(base_dir, task_id)
        connector = WebSocketConnector(
            ws,
            task_id,
            base_dir,
            message.get("source", ""),
            message.get("listenTo") or [],
        )
        connector.start()
        task.add_connector(connector)
        return task, connector

    def _spawn(self, coro: Awaitable[Any]) -> None:
        bg = asyncio.ensure_future(coro)
        self._background.add(bg)
        bg.add_done_callback(self._background.discard)

    # ── Inbound actions ──

    async def _on_response(self, task: Task, message: dict[str, Any]) -> None:
        await task.process_response_message(message)

    async def _on_prompt_finished(self, task: Task, message: dict[str, Any]) -> None:
        await task.prompt_finished(message.get("promptId"))

    async def _on_ask_question(self, task: Task, message: dict[str, Any]) -> None:
        question = QuestionData.from_dict(message.get("question") or message)
        # Queued behind any pending question; must not block the socket loop.
        self._spawn(task.ask_question(question, await_answer=False))

    async def _on_add_file(self, task: Task, message: dict[str, Any]) -> None:
        await task.add_file(
            ContextFile(path=message.get("path", ""), read_only=bool(message.get("readOnly"))),
            notify_connectors=False,
        )

    async def _on_drop_file(self, task: Task, message: dict[str, Any]) -> None:
        await task.drop_file(message.get("path", ""), notify_connectors=False)

    async def _on_set_models(self, task: Task, message: dict[str, Any]) -> None:
        task.handle_models_update({k: v for k, v in message.items() if k != "action"})

    async def _on_update_context_files(self, task: Task, message: dict[str, Any]) -> None:
        await task.update_context_files([
            ContextFile(path=f.get("path", ""), read_only=bool(f.get("readOnly")))
            for f in message.get("files") or []
        ])

    async def _on_tokens_info(self, task: Task, message: dict[str, Any]) -> None:
        await task.update_context_info(message.get("info") or {})

    async def _on_update_repo_map(self, task: Task, message: dict[str, Any]) -> None:
        task.update_repo_map(message.get("repoMap", ""))

    async def _on_log(self, task: Task, message: dict[str, Any]) -> None:
        await task.add_log_message(
            message.get("level", "info"),
            message.get("message", ""),
            finished=bool(message.get("finished")),
            prompt_context=PromptContext.from_dict(message.get("promptContext")),
        )
