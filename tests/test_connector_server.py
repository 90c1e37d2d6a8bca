from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp.test_utils import AioHTTPTestCase

from taskdesk.engine.config import AiderSettings, EngineConfig, ProjectSettings
from taskdesk.engine.connector import WebSocketConnector
from taskdesk.engine.connector_server import ConnectorServer
from taskdesk.engine.task import Task
from taskdesk.engine.task_registry import TaskRegistry
from taskdesk.engine.yaml_config import TaskDeskConfig


class TestConnectorServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        self.events: list[dict] = []

        async def callback(event: dict) -> None:
            self.events.append(event)

        config = TaskDeskConfig(
            engine=EngineConfig(pid_files_dir=f"{self.tmpdir}/pids", event_callback=callback),
            aider=AiderSettings(),
            project=ProjectSettings(),
        )

        def factory(task_id: str, base_dir: str) -> Task:
            aider = MagicMock()
            aider.start = AsyncMock()
            aider.kill = AsyncMock()
            return Task(task_id, base_dir, config=config, aider_manager=aider)

        self.registry = TaskRegistry(config, task_factory=factory)
        self.server = ConnectorServer(self.registry, port=0)
        return self.server.app

    async def asyncTearDown(self):
        await super().asyncTearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    async def _until(self, predicate, timeout: float = 2.0) -> None:
        async def poll() -> None:
            while not predicate():
                await asyncio.sleep(0.01)

        await asyncio.wait_for(poll(), timeout)

    async def _connect(self, listen_to: list[str]):
        ws = await self.client.ws_connect("/connector")
        await ws.send_json({
            "action": "init",
            "taskId": "t1",
            "baseDir": self.tmpdir,
            "source": "aider",
            "listenTo": listen_to,
        })
        await self._until(lambda: self.registry.get(self.tmpdir, "t1") is not None)
        task = self.registry.get(self.tmpdir, "t1")
        await self._until(lambda: len(task.connectors) == 1)
        return ws, task

    async def test_health_reports_task_count(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "tasks": 0}

    async def test_init_registers_connector_and_requests_context(self):
        ws, task = await self._connect(["prompt", "request-context-info"])

        message = await ws.receive_json(timeout=2)
        assert message == {"action": "request-context-info"}
        assert task.connectors[0].source == "aider"

        await ws.close()
        await self._until(lambda: task.connectors == [])

    async def test_inbound_actions_update_task(self):
        ws, task = await self._connect(["prompt"])

        await ws.send_json({"action": "add-file", "path": "src/app.py", "readOnly": True})
        await ws.send_json({"action": "set-models", "mainModel": "gpt-4.1", "weakModel": "gpt-4.1-mini"})
        await ws.send_json({"action": "update-repo-map", "repoMap": "src/app.py:\n  main()"})
        await ws.send_json({"action": "tokens-info", "info": {"totalTokens": 1200}})
        await self._until(lambda: task.repo_map != "")

        assert [(f.path, f.read_only) for f in task.context_files] == [("src/app.py", True)]
        assert task.aider_models_info == {"mainModel": "gpt-4.1", "weakModel": "gpt-4.1-mini"}
        await self._until(lambda: any(e["event"] == "context_info_updated" for e in self.events))
        await ws.close()

    async def test_ask_question_does_not_block_the_socket(self):
        ws, task = await self._connect(["answer-question"])

        await ws.send_json({"action": "ask-question", "question": {"text": "Create file?", "subject": "a.py"}})
        await self._until(lambda: task.current_question is not None)
        await ws.send_json({"action": "log", "level": "info", "message": "still alive"})
        await self._until(lambda: any(
            e["event"] == "log_message" and e["message"] == "still alive" for e in self.events
        ))

        assert await task.answer_question("y") is False
        assert await ws.receive_json(timeout=2) == {"action": "answer-question", "answer": "y"}
        await ws.close()

    async def test_prompt_finished_with_stale_id_is_ignored(self):
        ws, task = await self._connect(["prompt"])
        await ws.send_json({"action": "prompt-finished", "promptId": "old"})
        await ws.send_json({"action": "update-repo-map", "repoMap": "x"})
        await self._until(lambda: task.repo_map == "x")
        assert task.current_prompt_context is None
        await ws.close()


class _BrokenSocket:
    def __init__(self) -> None:
        self.attempts = 0

    async def send_str(self, data: str) -> None:
        self.attempts += 1
        raise RuntimeError("Cannot write to closing transport")


@pytest.mark.asyncio
async def test_websocket_connector_closes_on_send_failure(caplog) -> None:
    socket = _BrokenSocket()
    connector = WebSocketConnector(socket, "t1", "/repo", "aider")
    connector.start()

    with caplog.at_level(logging.ERROR, logger="taskdesk.engine.connector"):
        connector.send({"action": "request-context-info"})
        for _ in range(100):
            if connector.closed:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0)

    assert connector.closed
    assert socket.attempts == 1
    assert "failed to send request-context-info" in caplog.text
    connector.send({"action": "prompt"})
    assert connector.pending_messages() == []
