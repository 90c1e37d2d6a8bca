"""Connector channels: message links between a task and an execution backend.

A connector registers with the set of actions it listens to. Sends are
synchronous: messages are queued and a transport pumps them out, so the
task never blocks on a slow backend.
"""
from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any

from .models import ContextFile, ContextMessage, Mode, PromptContext

logger = logging.getLogger(__name__)


class MessageAction(str, Enum):
    """Outbound actions a connector may listen to."""
    PROMPT = "prompt"
    ADD_FILE = "add-file"
    DROP_FILE = "drop-file"
    SET_MODELS = "set-models"
    UPDATE_ENV_VARS = "update-env-vars"
    INTERRUPT_RESPONSE = "interrupt-response"
    ANSWER_QUESTION = "answer-question"
    REQUEST_CONTEXT_INFO = "request-context-info"
    ADD_MESSAGE = "add-message"


class Connector:
    """One registered backend link. Base class queues messages in memory."""

    def __init__(
        self,
        task_id: str,
        base_dir: str,
        source: str,
        listen_to: list[str] | None = None,
    ) -> None:
        self.task_id = task_id
        self.base_dir = base_dir
        self.source = source
        self.listen_to = set(listen_to or [])
        self._outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._closed = False

    def __repr__(self) -> str:
        return f"Connector(source={self.source!r}, task_id={self.task_id!r})"

    def listens_to(self, action: MessageAction | str) -> bool:
        value = action.value if isinstance(action, MessageAction) else action
        return not self.listen_to or value in self.listen_to

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            logger.debug("Dropping %s for closed %r", message.get("action"), self)
            return
        self._outbound.put_nowait(message)

    async def next_message(self) -> dict[str, Any]:
        return await self._outbound.get()

    def pending_messages(self) -> list[dict[str, Any]]:
        """Drain queued messages without blocking."""
        messages = []
        while not self._outbound.empty():
            messages.append(self._outbound.get_nowait())
        return messages

    # ── Wire vocabulary ──────────────────────────────────────

    def send_prompt(
        self,
        prompt: str,
        prompt_context: PromptContext,
        mode: Mode,
        architect_model: str | None = None,
        messages: list[ContextMessage] | None = None,
        files: list[ContextFile] | None = None,
    ) -> None:
        self.send({
            "action": MessageAction.PROMPT.value,
            "prompt": prompt,
            "promptId": prompt_context.id,
            "promptContext": prompt_context.to_dict(),
            "mode": mode.value,
            "architectModel": architect_model,
            "messages": [m.to_dict() for m in messages or []],
            "files": [f.to_dict() for f in files or []],
        })

    def send_add_file(self, file: ContextFile, no_update: bool = False) -> None:
        self.send({
            "action": MessageAction.ADD_FILE.value,
            "path": file.path,
            "readOnly": file.read_only,
            "noUpdate": no_update,
        })

    def send_drop_file(self, path: str, read_only: bool = False) -> None:
        self.send({
            "action": MessageAction.DROP_FILE.value,
            "path": path,
            "readOnly": read_only,
        })

    def send_set_models(
        self,
        main_model: str,
        weak_model: str | None,
        edit_format: str,
        environment_variables: dict[str, str] | None = None,
    ) -> None:
        self.send({
            "action": MessageAction.SET_MODELS.value,
            "mainModel": main_model,
            "weakModel": weak_model,
            "editFormat": edit_format,
            "environmentVariables": environment_variables or {},
        })

    def send_update_env_vars(self, environment_variables: dict[str, str]) -> None:
        self.send({
            "action": MessageAction.UPDATE_ENV_VARS.value,
            "environmentVariables": environment_variables,
        })

    def send_interrupt(self) -> None:
        self.send({"action": MessageAction.INTERRUPT_RESPONSE.value})

    def send_answer_question(self, answer: str) -> None:
        self.send({"action": MessageAction.ANSWER_QUESTION.value, "answer": answer})

    def send_request_context_info(self) -> None:
        self.send({"action": MessageAction.REQUEST_CONTEXT_INFO.value})

    def send_add_message(self, message: ContextMessage, acknowledge: bool = True) -> None:
        self.send({
            "action": MessageAction.ADD_MESSAGE.value,
            "role": message.role.value,
            "content": message.content,
            "acknowledge": acknowledge,
        })


class WebSocketConnector(Connector):
    """Connector backed by an aiohttp websocket."""

    def __init__(self, ws, task_id: str, base_dir: str, source: str, listen_to=None) -> None:
        super().__init__(task_id, base_dir, source, listen_to)
        self._ws = ws
        self._pump_task: asyncio.Task | None = None

    def start(self) -> None:
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        while not self._closed:
            message = await self.next_message()
            try:
                await self._ws.send_str(json.dumps(message))
            except ConnectionResetError:
                logger.warning("Connector %r disconnected while sending %s", self, message.get("action"))
                self.close()
            except Exception:
                logger.exception("Connector %r failed to send %s", self, message.get("action"))
                self.close()

    def close(self) -> None:
        super().close()
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
