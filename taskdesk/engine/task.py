"""Task coordinator: one unit of conversational work.

A Task owns everything per-task: connectors, conversation, context
files, the pending question, prompt/agent waiter queues, the backend
subprocess and (in worktree mode) an isolated git worktree. Nothing
here is shared between tasks.

At most one prompt is in flight per task. The slot is claimed by
setting ``_current_prompt_context``; callers that find it taken park
on ``_prompt_waiters`` and retry once ``prompt_finished`` drains the
queue.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from taskdesk.shared.services.task_store import TaskStore
from taskdesk.shared.services.todos import TodoStore

from .aider_manager import AiderManager
from .backends.agent import AgentBackend, AgentRunner
from .backends.aider import AiderBackend
from .backends.base import BACKEND_BY_MODE, Backend, BackendKind
from .backends.claude_agent import ClaudeAgentRunner
from .config import fire_event
from .connector import Connector, MessageAction
from .errors import (
    ConfigurationError,
    GitCommandError,
    MergeStateNotFoundError,
    NoWorktreeError,
    TaskDeskError,
)
from .git import GitOutcome, classify, run_git
from .lifecycle import validate_transition
from .model_mapping import ModelMapper
from .models import (
    AgentProfile,
    ContextFile,
    ContextMessage,
    MessageRole,
    Mode,
    PromptContext,
    PromptGroup,
    QuestionData,
    ResponseCompleted,
    TaskData,
    TaskState,
    TodoItem,
    UsageReport,
    Worktree,
    WorkingMode,
    WorktreeIntegrationStatus,
    _utcnow_iso,
)
from .prompts import (
    COMMIT_MESSAGE_SYSTEM_PROMPT,
    CONFLICT_RESOLUTION_PROFILE,
    CONFLICT_RESOLUTION_SYSTEM_PROMPT,
    commit_message_request,
    conflict_resolution_prompt,
)
from .questions import QuestionCoordinator
from .waiters import WaiterQueue
from .worktrees import WorktreeManager, generate_branch_name
from .yaml_config import TaskDeskConfig

logger = logging.getLogger(__name__)

# Log message keys a UI can translate; paired with recoverable action ids.
MERGE_CONFLICTS_KEY = "worktree.mergeConflicts"
APPLY_CONFLICTS_KEY = "worktree.applyUncommittedConflicts"
REBASE_CONFLICTS_KEY = "worktree.rebaseConflicts"

CONFLICT_GROUP_COLOR = "var(--color-agent-conflict-resolution)"
_NAME_WORDS = 5


def _name_from_prompt(prompt: str) -> str:
    return " ".join(prompt.strip().split(" ")[:_NAME_WORDS])


class Task:
    """Façade over backends, questions and the worktree engine for one task."""

    def __init__(
        self,
        task_id: str,
        base_dir: str,
        *,
        config: TaskDeskConfig | None = None,
        agent_runner: AgentRunner | None = None,
        worktree_manager: WorktreeManager | None = None,
        store: TaskStore | None = None,
        aider_manager: AiderManager | None = None,
        internal: bool = False,
    ) -> None:
        self.id = task_id
        self.base_dir = base_dir
        self._config = config or TaskDeskConfig.from_env()
        engine = self._config.engine
        self._internal = internal
        self._event_callback = engine.event_callback
        self._store = store or TaskStore(base_dir, engine.data_dir_name)
        self._todos = TodoStore(self._store.task_dir(task_id), task_id)
        self._worktrees = worktree_manager or WorktreeManager(engine.data_dir_name)
        self._agent_runner = agent_runner or ClaudeAgentRunner()
        self._mapper = ModelMapper(self._config.providers)

        self.data = self._store.load(task_id) or TaskData(id=task_id, base_dir=base_dir)

        # Per-task copies; model updates must not leak into other tasks.
        self._project = replace(
            self._config.project,
            model_edit_formats=dict(self._config.project.model_edit_formats),
        )
        for attr in ("main_model", "weak_model", "architect_model", "agent_profile_id"):
            value = getattr(self.data, attr)
            if value:
                setattr(self._project, attr, value)
        self._aider_settings = replace(
            self._config.aider,
            environment_variables=dict(self._config.aider.environment_variables),
        )
        self._aider = aider_manager or AiderManager(
            task_id,
            base_dir,
            engine_config=engine,
            aider_settings=self._aider_settings,
            project_settings=self._project,
            model_mapper=self._mapper,
            get_connectors=lambda: self.connectors,
        )
        self._backends: dict[BackendKind, Backend] = {
            BackendKind.AIDER: AiderBackend(),
            BackendKind.AGENT: AgentBackend(),
        }

        self.state = TaskState.UNINITIALIZED
        self.connectors: list[Connector] = []
        self.messages: list[ContextMessage] = []
        self.context_files: list[ContextFile] = []
        self.aider_models_info: dict[str, Any] = {}
        self.repo_map = ""

        self._current_prompt_context: PromptContext | None = None
        self._current_responses: list[ResponseCompleted] = []
        self._current_response_message_id: str | None = None
        self._prompt_waiters: WaiterQueue[list[ResponseCompleted]] = WaiterQueue("prompt")
        self._agent_waiters: WaiterQueue[None] = WaiterQueue("agent")
        self._init_waiters: WaiterQueue[bool] = WaiterQueue("init")
        self._agent_runs = 0
        self._cancel_event = asyncio.Event()
        self._background: set[asyncio.Task] = set()

        self._questions = QuestionCoordinator(
            task_id,
            base_dir,
            event_callback=self._event_callback,
            forward_answer=self._forward_answer,
        )

    def __repr__(self) -> str:
        return f"Task(id={self.id!r}, base_dir={self.base_dir!r}, state={self.state.value})"

    # ── Properties ───────────────────────────────────────────

    @property
    def working_dir(self) -> str:
        """Where edits land: the worktree in worktree mode, else base_dir."""
        worktree = self.data.worktree
        if self.data.working_mode == WorkingMode.WORKTREE and worktree is not None:
            return worktree.path
        return self.base_dir

    @property
    def current_prompt_context(self) -> PromptContext | None:
        return self._current_prompt_context

    @property
    def current_question(self) -> QuestionData | None:
        return self._questions.current_question

    @property
    def is_internal(self) -> bool:
        return self._internal

    def resolve_agent_profile(self) -> AgentProfile | None:
        return self._config.resolve_agent_profile(self.data.agent_profile_id)

    # ── Lifecycle ────────────────────────────────────────────

    def _set_state(self, target: TaskState) -> None:
        validate_transition(self.state, target)
        logger.debug("Task %s: %s -> %s", self.id, self.state.value, target.value)
        self.state = target

    async def init(self) -> None:
        """Prepare the working tree and start the backend. Idempotent."""
        if self.state in (TaskState.INITIALIZED, TaskState.RUNNING):
            logger.debug("Task %s already initialized, skipping", self.id)
            await self._emit("task_initialized", working_mode=self.data.working_mode.value)
            return
        if self.state == TaskState.INITIALIZING:
            if not await self._init_waiters.wait():
                raise TaskDeskError(f"Task {self.id} failed to initialize")
            return

        self._set_state(TaskState.INITIALIZING)
        logger.info("Initializing task %s in %s", self.id, self.base_dir)
        try:
            await self._sync_worktree(self.data.working_mode)
            await self._aider.start(cwd=self.working_dir)
        except BaseException:
            self._set_state(TaskState.UNINITIALIZED)
            self._init_waiters.release_all(False)
            raise
        self._set_state(TaskState.INITIALIZED)
        self._init_waiters.release_all(True)
        await self._emit("task_initialized", working_mode=self.data.working_mode.value)

    async def close(self, cleanup_empty_task: bool = True) -> None:
        """Interrupt work, kill the backend and drop the task if it was never named."""
        if self.state in (TaskState.CLOSING, TaskState.CLOSED):
            return
        logger.info("Closing task %s", self.id)
        self._set_state(TaskState.CLOSING)
        await self.interrupt_response()
        self._agent_waiters.release_all()
        self._questions.cancel()

        deleted = False
        try:
            await self._aider.kill()
        finally:
            if cleanup_empty_task:
                try:
                    deleted = self._store.cleanup_if_empty(self.id, internal=self._internal)
                except OSError as exc:
                    logger.error("Failed to remove task folder for %s: %s", self.id, exc)
            for bg in list(self._background):
                bg.cancel()
            self._set_state(TaskState.CLOSED)
        await self._emit("task_closed", deleted=deleted)

    async def restart(self) -> None:
        """Restart the backend and reset the cost counters."""
        if self.state not in (TaskState.INITIALIZED, TaskState.RUNNING):
            return
        await self.close(cleanup_empty_task=False)
        await self.init()
        self.data.aider_total_cost = 0.0
        self.data.agent_total_cost = 0.0
        if self.data.created_at:
            await self._save()
        await self._request_context_info()

    # ── Prompt execution ─────────────────────────────────────

    async def _claim_prompt_slot(self, prompt_context: PromptContext) -> None:
        while self._current_prompt_context is not None:
            logger.info(
                "Task %s: waiting for prompt %s to finish",
                self.id, self._current_prompt_context.id,
            )
            await self._prompt_waiters.wait()
        self._current_prompt_context = prompt_context
        self._current_responses = []
        self._current_response_message_id = None
        # Fresh token per prompt; an interrupted run keeps its own set token.
        self._cancel_event = asyncio.Event()
        if self.state == TaskState.INITIALIZED:
            self._set_state(TaskState.RUNNING)

    async def _wait_for_current_prompt(self) -> None:
        while self._current_prompt_context is not None:
            logger.info("Task %s: waiting for prompt to finish", self.id)
            await self._prompt_waiters.wait()

    async def run_prompt(self, prompt: str, mode: Mode = Mode.CODE) -> list[ResponseCompleted]:
        """Run *prompt* on the backend selected by *mode*.

        A pending question is answered "n" with *prompt* as free-form
        input first; when that satisfied an in-process asker, the
        prompt is consumed and nothing runs.
        """
        if self._questions.current_question is not None:
            if await self.answer_question("n", prompt):
                logger.debug("Prompt for task %s consumed as a question answer", self.id)
                return []

        # init() parks concurrent callers while another one is initializing.
        if self.state in (TaskState.UNINITIALIZED, TaskState.INITIALIZING, TaskState.CLOSED):
            await self.init()

        prompt_context = PromptContext()
        await self._claim_prompt_slot(prompt_context)
        try:
            logger.info("Running prompt for task %s (mode=%s)", self.id, mode.value)
            self.data.current_mode = mode
            await self._emit(
                "user_message_added",
                content=prompt,
                mode=mode.value,
                prompt_context=prompt_context.to_dict(),
            )
            await self._log("loading", prompt_context=prompt_context)
            backend = self._backends[BACKEND_BY_MODE[mode]]
            return await backend.run(self, prompt, prompt_context, mode)
        finally:
            if self._current_prompt_context is prompt_context:
                await self.prompt_finished(prompt_context.id)

    async def run_prompt_in_aider(
        self,
        prompt: str,
        prompt_context: PromptContext | None = None,
        mode: Mode = Mode.CODE,
    ) -> list[ResponseCompleted]:
        prompt_context = prompt_context or PromptContext()
        if self._current_prompt_context is not prompt_context:
            await self._claim_prompt_slot(prompt_context)
        try:
            await self._aider.wait_for_start()
            self.data.name = self.data.name or _name_from_prompt(prompt)
            self.data.started_at = _utcnow_iso()
            await self._save()

            history = self._conversation()
            files = list(self.context_files)
            self._append_message(ContextMessage(
                role=MessageRole.USER,
                content=prompt,
                id=prompt_context.id,
                prompt_context=prompt_context,
            ))

            # Registered before sending so a fast prompt-finished is not lost.
            waiter = self._prompt_waiters.add()
            architect_model = None
            if mode == Mode.ARCHITECT and self._project.architect_model:
                architect_model = self._mapper.map(self._project.architect_model).model_name
            for connector in self._listening(MessageAction.PROMPT):
                connector.send_prompt(prompt, prompt_context, mode, architect_model, history, files)
            responses = await waiter
        finally:
            if self._current_prompt_context is prompt_context:
                await self.prompt_finished(prompt_context.id)

        for response in responses:
            if response.content or response.reflected_message:
                self._append_message(ContextMessage(
                    role=MessageRole.ASSISTANT,
                    content=response.content,
                    id=response.message_id,
                    prompt_context=prompt_context,
                    usage_report=response.usage_report,
                ))
        self._schedule_refresh()
        self.data.completed_at = _utcnow_iso()
        await self._save()
        return responses

    async def run_prompt_in_agent(
        self,
        profile: AgentProfile,
        prompt: str,
        prompt_context: PromptContext | None = None,
        messages: list[ContextMessage] | None = None,
        files: list[ContextFile] | None = None,
        system_prompt: str | None = None,
        wait_for_current_agent: bool = True,
    ) -> list[ResponseCompleted]:
        """Run the in-process agent.

        With ``wait_for_current_agent=False`` the run neither claims the
        prompt slot nor queues behind other agent runs; conflict
        resolution uses this to fan out one run per file.
        """
        prompt_context = prompt_context or PromptContext()
        owns_slot = False
        if wait_for_current_agent and self._current_prompt_context is not prompt_context:
            await self._claim_prompt_slot(prompt_context)
            owns_slot = True
        cancel_event = self._cancel_event
        try:
            self.data.name = self.data.name or _name_from_prompt(prompt)
            self.data.started_at = _utcnow_iso()
            await self._save()

            if wait_for_current_agent:
                while self._agent_runs:
                    logger.warning("Agent is already running for task %s, waiting", self.id)
                    await self._agent_waiters.wait()

            history = self._conversation() if messages is None else messages
            context_files = list(self.context_files) if files is None else files
            if messages is None:
                self._append_message(ContextMessage(
                    role=MessageRole.USER,
                    content=prompt,
                    id=prompt_context.id,
                    prompt_context=prompt_context,
                ))

            self._agent_runs += 1
            try:
                result = await self._agent_runner.run_agent(
                    profile,
                    prompt,
                    cwd=self.working_dir,
                    prompt_context=prompt_context,
                    messages=history,
                    files=context_files,
                    system_prompt=system_prompt,
                    cancel_event=cancel_event,
                )
            finally:
                self._agent_runs -= 1
                self._agent_waiters.release_all()

            responses: list[ResponseCompleted] = []
            for message in result.messages:
                self._append_message(message)
                for connector in self._listening(MessageAction.ADD_MESSAGE):
                    connector.send_add_message(message, acknowledge=False)
                if message.role != MessageRole.ASSISTANT:
                    continue
                response = ResponseCompleted(
                    message_id=message.id,
                    content=message.content,
                    sequence_number=len(responses),
                    prompt_context=prompt_context,
                )
                responses.append(response)
                await self._emit_response_completed(response)
            if result.cost:
                self.data.agent_total_cost += result.cost

            if self._current_prompt_context is prompt_context:
                self._current_responses.extend(responses)
            self._schedule_refresh()
            self.data.completed_at = _utcnow_iso()
            await self._save()
        finally:
            if owns_slot or self._current_prompt_context is prompt_context:
                await self.prompt_finished(prompt_context.id)
        return responses

    async def prompt_finished(self, prompt_id: str | None = None) -> list[ResponseCompleted]:
        """Close the current prompt cycle and release its waiters.

        A *prompt_id* that does not match the current prompt is stale
        and ignored.
        """
        current = self._current_prompt_context
        if prompt_id and (current is None or current.id != prompt_id):
            logger.debug(
                "Task %s: ignoring prompt-finished for %s (current=%s)",
                self.id, prompt_id, current.id if current else None,
            )
            return []

        if self._current_response_message_id:
            await self._emit(
                "response_completed",
                message_id=self._current_response_message_id,
                content="",
                prompt_context=current.to_dict() if current else None,
            )
            self._current_response_message_id = None

        # sorted() is stable: equal sequence numbers keep arrival order.
        responses = sorted(self._current_responses, key=lambda r: r.sequence_number)
        self._current_responses = []
        self._current_prompt_context = None
        if self.state == TaskState.RUNNING:
            self._set_state(TaskState.INITIALIZED)
        released = self._prompt_waiters.release_all(responses)
        logger.debug(
            "Task %s: prompt %s finished with %d responses, released %d waiters",
            self.id, current.id if current else None, len(responses), released,
        )
        return responses

    async def process_response_message(self, message: dict[str, Any]) -> ResponseCompleted | None:
        """Handle one inbound ``response`` message from a connector."""
        prompt_context = PromptContext.from_dict(message.get("promptContext"))
        message_id = message.get("id") or message.get("messageId") or ""
        if not message.get("finished"):
            self._current_response_message_id = message_id
            await self._emit(
                "response_chunk",
                message_id=message_id,
                chunk=message.get("content", ""),
                reflected_message=message.get("reflectedMessage"),
                prompt_context=prompt_context.to_dict() if prompt_context else None,
            )
            return None

        usage = message.get("usageReport")
        usage_report = UsageReport.from_dict(usage) if isinstance(usage, dict) else None
        if usage_report is not None:
            if not usage_report.model:
                usage_report.model = self.aider_models_info.get("mainModel", "unknown")
            self.data.aider_total_cost += usage_report.message_cost
            usage_report.aider_total_cost = self.data.aider_total_cost
            usage_report.agent_total_cost = self.data.agent_total_cost

        response = ResponseCompleted(
            message_id=message_id,
            content=message.get("content", ""),
            reflected_message=message.get("reflectedMessage"),
            edited_files=list(message.get("editedFiles") or []),
            commit_hash=message.get("commitHash"),
            commit_message=message.get("commitMessage"),
            diff=message.get("diff"),
            usage_report=usage_report,
            sequence_number=int(message.get("sequenceNumber") or 0),
            prompt_context=prompt_context,
        )
        self._current_response_message_id = None
        await self._emit_response_completed(response)
        self._current_responses.append(response)
        return response

    async def interrupt_response(self) -> None:
        """Cooperatively stop whatever is running. Safe to call when idle."""
        logger.info("Interrupting response for task %s", self.id)
        if self._questions.current_question is not None:
            await self.answer_question("n", "Cancelled")
        for connector in self._listening(MessageAction.INTERRUPT_RESPONSE):
            connector.send_interrupt()
        self._cancel_event.set()
        await self.prompt_finished()

    async def save_prompt_only(self, prompt: str) -> None:
        """Record *prompt* as a user turn without running it."""
        prompt_context = PromptContext()
        logger.info("Saving prompt without execution for task %s", self.id)
        await self._emit(
            "user_message_added",
            content=prompt,
            mode=self.data.current_mode.value,
            prompt_context=prompt_context.to_dict(),
        )
        self._append_message(ContextMessage(
            role=MessageRole.USER,
            content=prompt,
            id=prompt_context.id,
            prompt_context=prompt_context,
        ))
        self.data.name = self.data.name or _name_from_prompt(prompt)
        await self._save()

    # ── Questions ────────────────────────────────────────────

    async def ask_question(
        self, question: QuestionData, await_answer: bool = True,
    ) -> tuple[str, str | None]:
        return await self._questions.ask_question(question, await_answer)

    async def answer_question(self, answer: str, user_input: str | None = None) -> bool:
        return await self._questions.answer_question(answer, user_input)

    def _forward_answer(self, answer: str, question: QuestionData) -> None:
        for connector in self._listening(MessageAction.ANSWER_QUESTION):
            connector.send_answer_question(answer)

    # ── Connectors ───────────────────────────────────────────

    def _listening(self, action: MessageAction) -> list[Connector]:
        return [c for c in self.connectors if c.listens_to(action)]

    def add_connector(self, connector: Connector) -> None:
        """Register *connector* and replay the task's context to it."""
        if connector.task_id != self.id:
            logger.debug(
                "Connector for task %s does not belong to task %s", connector.task_id, self.id,
            )
            return
        logger.info("Adding %s connector for task %s", connector.source, self.id)
        self._aider.handle_connector_added(connector)
        self.connectors.append(connector)

        if connector.listens_to(MessageAction.ADD_FILE):
            last = len(self.context_files) - 1
            for index, context_file in enumerate(self.context_files):
                connector.send_add_file(context_file, no_update=index != last)
        if connector.listens_to(MessageAction.ADD_MESSAGE):
            for message in self._conversation():
                connector.send_add_message(message, acknowledge=False)
        if connector.listens_to(MessageAction.UPDATE_ENV_VARS):
            connector.send_update_env_vars(self._aider_settings.environment_variables)
        if connector.listens_to(MessageAction.REQUEST_CONTEXT_INFO):
            connector.send_request_context_info()

    def remove_connector(self, connector: Connector) -> None:
        self.connectors = [c for c in self.connectors if c is not connector]

    # ── Context files ────────────────────────────────────────

    async def add_file(self, context_file: ContextFile, notify_connectors: bool = True) -> bool:
        if any(f.path == context_file.path for f in self.context_files):
            return False
        self.context_files.append(context_file)
        if notify_connectors:
            for connector in self._listening(MessageAction.ADD_FILE):
                connector.send_add_file(context_file)
        await self._send_context_files_updated()
        return True

    async def drop_file(self, path: str, notify_connectors: bool = True) -> bool:
        dropped = [f for f in self.context_files if f.path == path]
        if not dropped:
            return False
        self.context_files = [f for f in self.context_files if f.path != path]
        if notify_connectors:
            for connector in self._listening(MessageAction.DROP_FILE):
                connector.send_drop_file(path, dropped[0].read_only)
        await self._send_context_files_updated()
        return True

    async def update_context_files(self, files: list[ContextFile]) -> None:
        self.context_files = list(files)
        await self._send_context_files_updated()

    async def _send_context_files_updated(self) -> None:
        await self._emit(
            "context_files_updated",
            files=[f.to_dict() for f in self.context_files],
        )

    # ── Models and environment ───────────────────────────────

    async def update_models(
        self,
        main_model: str,
        weak_model: str | None = None,
        edit_format: str | None = None,
    ) -> None:
        self.data.main_model = main_model
        self.data.weak_model = weak_model
        self._aider.update_models(main_model, weak_model, edit_format)
        if self.data.created_at:
            await self._save()

    async def set_architect_model(self, architect_model: str) -> None:
        self.data.architect_model = architect_model
        self._project.architect_model = architect_model
        if self.data.created_at:
            await self._save()

    def update_environment_variables(self, environment_variables: dict[str, str]) -> None:
        self._aider.send_update_env_vars(environment_variables)

    def handle_models_update(self, info: dict[str, Any]) -> None:
        """Models the subprocess backend reports it is actually using."""
        logger.debug("Task %s backend models: %s", self.id, info)
        self.aider_models_info = dict(info)

    async def update_context_info(self, info: dict[str, Any]) -> None:
        await self._emit("context_info_updated", info=dict(info))

    def update_repo_map(self, repo_map: str) -> None:
        self.repo_map = repo_map or ""

    # ── Task record ──────────────────────────────────────────

    async def update_task(self, **updates: Any) -> TaskData:
        """Apply field updates; persist only once the task is named or saved."""
        working_mode = updates.pop("working_mode", None)
        if working_mode is not None:
            working_mode = WorkingMode(working_mode)
            if working_mode != self.data.working_mode:
                await self.apply_working_mode(working_mode)

        for key, value in updates.items():
            if key not in TaskData.__dataclass_fields__ or key == "id":
                raise ValueError(f"Unknown task field: {key}")
            setattr(self.data, key, value)

        if self.data.created_at or "name" in updates:
            await self._save()
        else:
            await self._emit("task_updated", task=self.data.to_dict())
        return self.data

    async def duplicate_from(self, source: Task) -> None:
        """Copy name, context, conversation, todos and working mode from *source*."""
        self.data.name = f"{source.data.name} (Copy)"
        await self._save()
        for context_file in source.context_files:
            await self.add_file(replace(context_file))
        self.messages.extend(replace(m) for m in source.messages)
        todos = source.get_todos()
        if todos:
            self.set_todos(todos, "Duplicated from original task")
        if source.data.worktree is not None and source.data.working_mode == WorkingMode.WORKTREE:
            await self.update_task(working_mode=WorkingMode.WORKTREE)

    async def _save(self) -> None:
        if self._internal:
            return
        self._store.save(self.data)
        await self._emit("task_updated", task=self.data.to_dict())

    def _append_message(self, message: ContextMessage) -> None:
        self.messages.append(message)

    def _conversation(self) -> list[ContextMessage]:
        return [
            m for m in self.messages
            if m.role in (MessageRole.USER, MessageRole.ASSISTANT)
        ]

    # ── Todos ────────────────────────────────────────────────

    def get_todos(self) -> list[TodoItem]:
        current = self._todos.get()
        return current[1] if current else []

    def set_todos(self, items: list[TodoItem], initial_user_prompt: str = "") -> list[TodoItem]:
        return self._todos.set(items, initial_user_prompt)

    def add_todo(self, name: str) -> list[TodoItem]:
        return self._todos.add([name])

    def update_todo(
        self, name: str, *, completed: bool | None = None, new_name: str | None = None,
    ) -> list[TodoItem]:
        return self._todos.update(name, completed=completed, new_name=new_name)

    def delete_todo(self, name: str) -> list[TodoItem]:
        return self._todos.delete(name)

    def clear_all_todos(self) -> list[TodoItem]:
        self._todos.clear()
        return []

    # ── Working mode ─────────────────────────────────────────

    def _branch_name(self) -> str:
        return generate_branch_name(
            self.data.name, self.id, self._config.engine.worktree_branch_prefix,
        )

    async def _sync_worktree(self, mode: WorkingMode) -> None:
        existing = await self._worktrees.get_task_worktree(self.base_dir, self.id)
        if mode == WorkingMode.WORKTREE:
            if existing is None:
                existing = await self._worktrees.create_worktree(
                    self.base_dir, self.id, self._branch_name(),
                )
            self.data.worktree = existing
        else:
            if existing is not None:
                await self._worktrees.remove_worktree(self.base_dir, existing)
            self.data.worktree = None
            self.data.last_merge_state = None
        self.data.working_mode = mode

    async def apply_working_mode(self, mode: WorkingMode) -> None:
        """Switch between the main tree and a dedicated worktree."""
        logger.info("Applying working mode %s to task %s", mode.value, self.id)
        await self._wait_for_current_prompt()
        await self._sync_worktree(mode)
        if self.state in (TaskState.INITIALIZED, TaskState.RUNNING):
            await self._aider.start(cwd=self.working_dir)

    def _require_worktree(self) -> Worktree:
        if self.data.worktree is None:
            raise NoWorktreeError(self.id)
        return self.data.worktree

    # ── Worktree integration ─────────────────────────────────

    async def _generate_commit_message(self, worktree_path: str, target_branch: str | None) -> str:
        fallback = self.data.name or f"Task {self.id} changes"
        diff = await self._worktrees.get_changes_diff(self.base_dir, worktree_path, target_branch)
        if not diff.strip():
            return fallback
        profile = self.resolve_agent_profile()
        if profile is None:
            logger.warning("No active agent profile found, using task name for commit message")
            return fallback
        try:
            message = await self._agent_runner.generate_text(
                profile, COMMIT_MESSAGE_SYSTEM_PROMPT, commit_message_request(diff),
            )
        except Exception:
            logger.warning(
                "Failed to generate commit message for task %s, falling back to task name",
                self.id, exc_info=True,
            )
            return fallback
        logger.info("Generated commit message for task %s: %s", self.id, message)
        return message.strip() or fallback

    async def merge_to_main(
        self,
        squash: bool = False,
        target_branch: str | None = None,
        commit_message: str | None = None,
    ) -> None:
        worktree = self._require_worktree()
        await self._wait_for_current_prompt()
        logger.info("Merging worktree of task %s (squash=%s)", self.id, squash)
        try:
            target = target_branch or await self._worktrees.get_project_main_branch(self.base_dir)
            await self._log(
                "loading",
                f"Squashing and merging worktree to {target} branch..."
                if squash else f"Merging worktree to {target} branch...",
            )
            message = commit_message
            if squash and not message:
                message = await self._generate_commit_message(worktree.path, target_branch)
            merge_state = await self._worktrees.merge_worktree_to_main(
                self.base_dir, self.id, worktree.path, squash, message, target_branch,
            )
            self.data.last_merge_state = merge_state
            await self._save()
            await self._log(
                "info",
                f"Successfully squashed and merged worktree to {target} branch"
                if squash else f"Successfully merged worktree to {target} branch",
                finished=True,
            )
        except GitCommandError as exc:
            await self._report_git_failure("merge", exc, MERGE_CONFLICTS_KEY, ["rebase-worktree"])
        await self._send_integration_status()

    async def apply_uncommitted_changes(self, target_branch: str | None = None) -> None:
        worktree = self._require_worktree()
        await self._wait_for_current_prompt()
        try:
            target = target_branch or await self._worktrees.get_project_main_branch(self.base_dir)
            await self._log("loading", f"Applying uncommitted changes to {target} branch...")
            applied = await self._worktrees.apply_uncommitted_changes(
                self.base_dir, self.id, worktree.path, target,
            )
            await self._log(
                "info",
                f"Successfully applied uncommitted changes to {target} branch"
                if applied else "No uncommitted changes to apply",
                finished=True,
            )
        except GitCommandError as exc:
            await self._report_git_failure(
                "apply uncommitted changes of", exc, APPLY_CONFLICTS_KEY, ["rebase-worktree"],
            )
        await self._send_integration_status()

    async def revert_last_merge(self) -> None:
        merge_state = self.data.last_merge_state
        if merge_state is None:
            raise MergeStateNotFoundError(self.id)
        worktree = self._require_worktree()
        await self._wait_for_current_prompt()
        logger.info("Reverting last merge of task %s", self.id)
        try:
            await self._log("loading", "Reverting last merge...")
            await self._worktrees.revert_merge(self.base_dir, self.id, worktree.path, merge_state)
            self.data.last_merge_state = None
            await self._save()
            await self._log("info", "Successfully reverted last merge", finished=True)
        except GitCommandError as exc:
            logger.error("Failed to revert merge of task %s: %s", self.id, exc)
            await self._log("error", str(exc), finished=True)
        await self._send_integration_status()

    async def rebase_from_branch(self, from_branch: str | None = None) -> None:
        worktree = self._require_worktree()
        source = from_branch or await self._worktrees.get_project_main_branch(self.base_dir)
        logger.info("Rebasing worktree of task %s from %s", self.id, source)
        await self._wait_for_current_prompt()
        try:
            await self._log("loading", f"Rebasing worktree from {source}...")
            await self._worktrees.rebase_from_branch(worktree.path, source)
            await self._log("info", "Worktree rebased successfully", finished=True)
        except GitCommandError as exc:
            await self._report_git_failure(
                "rebase", exc, REBASE_CONFLICTS_KEY, ["abort-rebase", "resolve-conflicts-with-agent"],
            )
        await self._send_integration_status()

    async def abort_rebase(self) -> None:
        worktree = self._require_worktree()
        await self._wait_for_current_prompt()
        try:
            await self._log("loading", "Aborting rebase...")
            await self._worktrees.abort_rebase(worktree.path)
            await self._log("info", "Rebase aborted", finished=True)
        except GitCommandError as exc:
            logger.error("Failed to abort rebase of task %s: %s", self.id, exc)
            await self._log("error", str(exc), finished=True)
        await self._send_integration_status()

    async def continue_rebase(self) -> None:
        worktree = self._require_worktree()
        await self._wait_for_current_prompt()
        try:
            await self._log("loading", "Continuing rebase...")
            await self._worktrees.continue_rebase(worktree.path)
            await self._log("info", "Rebase continued", finished=True)
        except GitCommandError as exc:
            await self._report_git_failure(
                "continue rebase of", exc, REBASE_CONFLICTS_KEY,
                ["abort-rebase", "resolve-conflicts-with-agent"],
            )
        await self._send_integration_status()

    async def _report_git_failure(
        self, action: str, exc: GitCommandError, conflict_key: str, conflict_actions: list[str],
    ) -> None:
        """Log a failed git step; conflicts get a hint key and recovery actions."""
        logger.error("Failed to %s worktree of task %s: %s", action, self.id, exc)
        if classify(exc) == GitOutcome.CONFLICT:
            await self._log("error", conflict_key, finished=True, action_ids=conflict_actions)
        else:
            await self._log("error", str(exc), finished=True)

    async def resolve_conflicts_with_agent(self) -> list[str]:
        """Resolve every conflicted file with its own agent pass.

        Files are handled concurrently. Returns the files that were
        resolved and staged; the rest stay conflicted.
        """
        worktree = self._require_worktree()
        await self._wait_for_current_prompt()
        active = self.resolve_agent_profile()
        if active is None:
            raise ConfigurationError("No active agent profile found")
        # One token for the whole batch so a single interrupt stops every file.
        self._cancel_event = asyncio.Event()

        resolved: list[str] = []
        try:
            await self._log("loading", "Resolving conflicts with agent...")
            files = await self._worktrees.list_conflicted_files(worktree.path)
            if not files:
                await self._log("info", "No conflicted files found", finished=True)
                return []

            profile = replace(
                CONFLICT_RESOLUTION_PROFILE,
                provider=active.provider,
                model=active.model,
                allowed_tools=list(CONFLICT_RESOLUTION_PROFILE.allowed_tools),
            )
            outcomes = await asyncio.gather(*(
                self._resolve_conflicted_file(worktree.path, file_path, profile)
                for file_path in files
            ))
            resolved = [f for f, ok in zip(files, outcomes) if ok]
            if len(resolved) == len(files):
                await self._log(
                    "info",
                    "Conflicts resolved and staged. You can now continue the rebase.",
                    finished=True,
                    action_ids=["continue-rebase", "abort-rebase"],
                )
            else:
                unresolved = [f for f in files if f not in resolved]
                await self._log(
                    "warning",
                    f"Resolved {len(resolved)} of {len(files)} conflicted files. "
                    f"Still conflicted: {', '.join(unresolved)}",
                    finished=True,
                    action_ids=["resolve-conflicts-with-agent", "abort-rebase"],
                )
        except GitCommandError as exc:
            logger.error("Failed to resolve conflicts for task %s: %s", self.id, exc)
            await self._log("error", str(exc), finished=True)
        await self._send_integration_status()
        return resolved

    async def _resolve_conflicted_file(
        self, worktree_path: str, file_path: str, profile: AgentProfile,
    ) -> bool:
        prompt_context = PromptContext(group=PromptGroup(
            name=f"Resolving {file_path}...",
            color=CONFLICT_GROUP_COLOR,
        ))
        await self._log("loading", f"Resolving {file_path}...", prompt_context=prompt_context)

        snapshot = self._worktrees.conflicts_dir(self.base_dir) / file_path
        paths = {stage: Path(f"{snapshot}.{stage}") for stage in ("base", "ours", "theirs")}
        try:
            conflict = await self._worktrees.collect_conflict_context(worktree_path, file_path)
            snapshot.parent.mkdir(parents=True, exist_ok=True)
            written: dict[str, str] = {}
            for stage, content in (
                ("base", conflict.base), ("ours", conflict.ours), ("theirs", conflict.theirs),
            ):
                if content is not None:
                    paths[stage].write_text(content, encoding="utf-8")
                    written[stage] = str(paths[stage])

            prompt = conflict_resolution_prompt(
                conflict,
                base_path=written.get("base"),
                ours_path=written.get("ours"),
                theirs_path=written.get("theirs"),
            )
            await self.run_prompt_in_agent(
                profile,
                prompt,
                prompt_context,
                messages=[],
                files=[ContextFile(path=file_path)],
                system_prompt=CONFLICT_RESOLUTION_SYSTEM_PROMPT,
                wait_for_current_agent=False,
            )
            await run_git(["add", "--", file_path], worktree_path)
        except Exception as exc:
            # One file's failure must not affect the others.
            logger.error("Failed to resolve %s for task %s: %s", file_path, self.id, exc)
            prompt_context.group.finished = True
            await self._log(
                "error",
                f"Failed to resolve {file_path}: {exc}",
                finished=True,
                prompt_context=prompt_context,
            )
            return False
        finally:
            for path in paths.values():
                path.unlink(missing_ok=True)

        prompt_context.group.name = f"Resolved {file_path}"
        prompt_context.group.finished = True
        await self._log("info", f"Resolved {file_path}", finished=True, prompt_context=prompt_context)
        return True

    async def get_integration_status(
        self, target_branch: str | None = None,
    ) -> WorktreeIntegrationStatus | None:
        """Fresh status of the worktree; None in local mode."""
        if self.data.worktree is None:
            return None
        return await self._worktrees.get_integration_status(
            self.base_dir, self.data.worktree.path, target_branch,
        )

    async def _send_integration_status(self) -> None:
        try:
            status = await self.get_integration_status()
        except (GitCommandError, OSError) as exc:
            logger.warning("Could not compute integration status for task %s: %s", self.id, exc)
            return
        if status is not None:
            await self._emit("worktree_integration_status_updated", status=status.to_dict())

    # ── Refreshes and events ─────────────────────────────────

    async def _request_context_info(self) -> None:
        for connector in self._listening(MessageAction.REQUEST_CONTEXT_INFO):
            connector.send_request_context_info()
        await self._emit("context_info_requested")

    def _schedule_refresh(self) -> None:
        for coro in (self._request_context_info(), self._send_integration_status()):
            bg = asyncio.create_task(coro)
            self._background.add(bg)
            bg.add_done_callback(self._background.discard)

    async def _emit_response_completed(self, response: ResponseCompleted) -> None:
        usage = response.usage_report
        await self._emit(
            "response_completed",
            message_id=response.message_id,
            content=response.content,
            reflected_message=response.reflected_message,
            edited_files=list(response.edited_files),
            commit_hash=response.commit_hash,
            commit_message=response.commit_message,
            diff=response.diff,
            usage_report=asdict(usage) if usage else None,
            sequence_number=response.sequence_number,
            prompt_context=response.prompt_context.to_dict() if response.prompt_context else None,
        )

    async def add_log_message(
        self,
        level: str,
        message: str = "",
        finished: bool = False,
        prompt_context: PromptContext | None = None,
    ) -> None:
        """Log entry reported by a backend."""
        await self._log(level, message, finished=finished, prompt_context=prompt_context)

    async def _log(
        self,
        level: str,
        message: str = "",
        *,
        finished: bool = False,
        prompt_context: PromptContext | None = None,
        action_ids: list[str] | None = None,
    ) -> None:
        await self._emit(
            "log_message",
            level=level,
            message=message,
            finished=finished,
            prompt_context=prompt_context.to_dict() if prompt_context else None,
            action_ids=list(action_ids or []),
        )

    async def _emit(self, event: str, **fields: Any) -> None:
        await fire_event(self._event_callback, {
            "event": event,
            "task_id": self.id,
            "base_dir": self.base_dir,
            **fields,
        })
