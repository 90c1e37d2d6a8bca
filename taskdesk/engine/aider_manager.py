"""Lifecycle of the subprocess coding backend for one task.

The backend is started as ``<python> -m connector ...`` inside the
task's working directory and connects back over the connector
server. Its pid is written to a marker file named by a hash of
(base_dir, task_id); a later ``start()`` for the same pair kills any
survivor of a previous crash before spawning a new process.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shlex
import signal
from collections.abc import Callable
from pathlib import Path

from taskdesk.shared.services.process_cleanup import kill_process_tree, pid_alive

from .config import AiderSettings, EngineConfig, ProjectSettings
from .connector import Connector, MessageAction
from .errors import ProcessControlError
from .model_mapping import ModelMapper

logger = logging.getLogger(__name__)

AIDER_SOURCE = "aider"


def pid_file_name(base_dir: str, task_id: str) -> str:
    """Deterministic marker file name for a (base_dir, task_id) pair."""
    digest = hashlib.sha256()
    digest.update(base_dir.encode("utf-8"))
    digest.update(task_id.encode("utf-8"))
    return f"{digest.hexdigest()}.pid"


def parse_options(options: str) -> list[str]:
    """Split user options, dropping any ``--model X`` pair."""
    raw = shlex.split(options or "")
    processed: list[str] = []
    skip = False
    for arg in raw:
        if skip:
            skip = False
            continue
        if arg == "--model":
            skip = True
            continue
        processed.append(arg)
    return processed


class AiderManager:
    """Spawns, supervises and kills the subprocess backend."""

    def __init__(
        self,
        task_id: str,
        base_dir: str,
        *,
        engine_config: EngineConfig,
        aider_settings: AiderSettings,
        project_settings: ProjectSettings,
        model_mapper: ModelMapper,
        get_connectors: Callable[[], list[Connector]],
    ) -> None:
        self.task_id = task_id
        self.base_dir = base_dir
        self._config = engine_config
        self._aider = aider_settings
        self._project = project_settings
        self._mapper = model_mapper
        self._get_connectors = get_connectors
        self._process: asyncio.subprocess.Process | None = None
        self._output_tasks: list[asyncio.Task] = []
        self._start_gate: asyncio.Future[None] | None = None

    @property
    def pid_file_path(self) -> Path:
        return Path(self._config.pid_files_dir) / pid_file_name(self.base_dir, self.task_id)

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    def is_started(self) -> bool:
        return self._process is not None

    # ── Invocation ───────────────────────────────────────────

    def build_args(self) -> list[str]:
        project = self._project
        main_model = project.main_model or self._config.default_main_model
        options = parse_options(self._aider.options)
        option_set = set(shlex.split(self._aider.options or ""))

        args = ["-m", "connector", *options]
        args += ["--no-check-update", "--no-show-model-warnings"]
        args += ["--model", self._mapper.map(main_model).model_name]
        if project.weak_model:
            args += ["--weak-model", self._mapper.map(project.weak_model).model_name]
        args += [
            "--edit-format",
            project.model_edit_formats.get(main_model) or self._config.default_edit_format,
        ]
        if project.reasoning_effort is not None and "--reasoning-effort" not in option_set:
            args += ["--reasoning-effort", project.reasoning_effort]
        if project.thinking_tokens is not None and "--thinking-tokens" not in option_set:
            args += ["--thinking-tokens", project.thinking_tokens]

        rules_dir = Path(self._config.data_dir_name) / self._config.rules_dir_name
        if self._aider.add_rule_files and (Path(self.base_dir) / rules_dir).is_dir():
            args += ["--read", str(rules_dir)]

        toggles = (
            ("auto-commits", self._aider.auto_commits),
            ("watch-files", self._aider.watch_files),
            ("cache-prompts", self._aider.caching_enabled),
        )
        for name, enabled in toggles:
            if f"--{name}" in option_set or f"--no-{name}" in option_set:
                continue
            args.append(f"--{name}" if enabled else f"--no-{name}")
        return args

    def build_env(self) -> dict[str, str]:
        project = self._project
        env = dict(os.environ)
        env.update(self._aider.environment_variables)
        env.update(self._mapper.map(project.main_model or self._config.default_main_model).environment_variables)
        if project.weak_model:
            env.update(self._mapper.map(project.weak_model).environment_variables)
        if self._config.connector_pythonpath:
            env["PYTHONPATH"] = self._config.connector_pythonpath
        env["PYTHONUTF8"] = "1"
        env["BASE_DIR"] = self.base_dir
        env["TASK_ID"] = self.task_id
        env["CONNECTOR_SERVER_URL"] = self._config.connector_url
        env["CONNECTOR_CONFIRM_BEFORE_EDIT"] = "1" if self._aider.confirm_before_edit else "0"
        return env

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self, cwd: str | None = None) -> None:
        """Spawn the backend in *cwd* (defaults to base_dir)."""
        if self._process is not None:
            await self.kill()
        self._cleanup_stale_process()

        if self._start_gate is not None and self._start_gate.done():
            self._start_gate = None
        self._pending_start_gate()

        args = self.build_args()
        logger.info(
            "Starting backend for task %s in %s: %s %s",
            self.task_id, cwd or self.base_dir, self._config.python_command, " ".join(args),
        )
        try:
            # Array-based exec, no shell
            self._process = await asyncio.create_subprocess_exec(
                self._config.python_command,
                *args,
                cwd=cwd or self.base_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
            )
        except OSError as exc:
            logger.error("Failed to spawn backend for task %s: %s", self.task_id, exc)
            raise ProcessControlError(self.task_id, "start", str(exc)) from exc

        if self._process.stdout is not None:
            self._output_tasks.append(asyncio.create_task(self._pump_stdout(self._process.stdout)))
        if self._process.stderr is not None:
            self._output_tasks.append(asyncio.create_task(self._pump_stderr(self._process.stderr)))
        self._write_pid_file()

    async def kill(self) -> None:
        """Kill the whole backend process tree. No-op when nothing is tracked."""
        process = self._process
        if process is None:
            return
        logger.info("Killing backend for task %s (pid=%s)", self.task_id, process.pid)
        try:
            kill_process_tree(process.pid, signal.SIGKILL)
            self._remove_pid_file()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Backend pid=%s did not exit after SIGKILL", process.pid)
        except OSError as exc:
            logger.error("Error killing backend for task %s: %s", self.task_id, exc)
            raise ProcessControlError(self.task_id, "kill", str(exc)) from exc
        finally:
            self._process = None
            for task in self._output_tasks:
                task.cancel()
            self._output_tasks = []

    async def wait_for_start(self) -> None:
        """Block until the backend's connector has registered.

        Callers arriving before start() share the gate start() resolves.
        """
        await asyncio.shield(self._pending_start_gate())

    def _pending_start_gate(self) -> asyncio.Future[None]:
        if self._start_gate is None:
            self._start_gate = asyncio.get_running_loop().create_future()
        return self._start_gate

    def handle_connector_added(self, connector: Connector) -> None:
        if connector.source != AIDER_SOURCE:
            return
        if self._start_gate is not None and not self._start_gate.done():
            self._start_gate.set_result(None)
            logger.info("Backend for task %s is ready", self.task_id)

    # ── Model/env updates sent to running backend ────────────

    def update_models(
        self,
        main_model: str,
        weak_model: str | None = None,
        edit_format: str | None = None,
    ) -> None:
        self._project.main_model = main_model
        self._project.weak_model = weak_model
        if edit_format:
            self._project.model_edit_formats[main_model] = edit_format
        main = self._mapper.map(main_model)
        env = dict(main.environment_variables)
        weak_name = None
        if weak_model:
            weak = self._mapper.map(weak_model)
            weak_name = weak.model_name
            env.update(weak.environment_variables)
        fmt = edit_format or self._project.model_edit_formats.get(main_model) or self._config.default_edit_format
        for connector in self._listening(MessageAction.SET_MODELS):
            connector.send_set_models(main.model_name, weak_name, fmt, env)

    def send_update_env_vars(self, environment_variables: dict[str, str]) -> None:
        self._aider.environment_variables.update(environment_variables)
        for connector in self._listening(MessageAction.UPDATE_ENV_VARS):
            connector.send_update_env_vars(self._aider.environment_variables)

    def _listening(self, action: MessageAction) -> list[Connector]:
        return [
            c for c in self._get_connectors()
            if c.source == AIDER_SOURCE and c.listens_to(action)
        ]

    # ── Crash-recovery marker ────────────────────────────────

    def _write_pid_file(self) -> None:
        if self._process is None:
            return
        try:
            self.pid_file_path.parent.mkdir(parents=True, exist_ok=True)
            self.pid_file_path.write_text(str(self._process.pid))
        except OSError as exc:
            logger.error("Failed to write pid file %s: %s", self.pid_file_path, exc)

    def _remove_pid_file(self) -> None:
        try:
            self.pid_file_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Failed to remove pid file %s: %s", self.pid_file_path, exc)

    def _cleanup_stale_process(self) -> None:
        path = self.pid_file_path
        if not path.exists():
            return
        try:
            pid = int(path.read_text().strip())
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable pid file %s: %s", path, exc)
            pid = 0
        try:
            if pid and pid_alive(pid):
                logger.info("Killing stale backend pid=%d for task %s", pid, self.task_id)
                kill_process_tree(pid, signal.SIGKILL)
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Error cleaning up stale pid file %s: %s", path, exc)

    # ── Output ───────────────────────────────────────────────

    async def _pump_stdout(self, stream: asyncio.StreamReader) -> None:
        async for raw in stream:
            logger.debug("backend[%s] %s", self.task_id, raw.decode("utf-8", errors="replace").rstrip())

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line.startswith(("Warning:", "usage:")):
                logger.debug("backend[%s] %s", self.task_id, line)
            else:
                logger.error("backend[%s] stderr: %s", self.task_id, line)
