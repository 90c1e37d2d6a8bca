from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from taskdesk.engine.backends.agent import AgentRunner, AgentRunResult
from taskdesk.engine.config import AiderSettings, EngineConfig, ProjectSettings
from taskdesk.engine.connector import Connector
from taskdesk.engine.errors import ConfigurationError, ProcessControlError
from taskdesk.engine.models import (
    AgentProfile,
    ContextFile,
    ContextMessage,
    MessageRole,
    Mode,
    QuestionData,
    TaskState,
)
from taskdesk.engine.task import Task
from taskdesk.engine.yaml_config import TaskDeskConfig


class _RecordingConnector(Connector):
    def __init__(self, task_id: str, base_dir: str, source: str = "aider", listen_to=None) -> None:
        super().__init__(task_id, base_dir, source, listen_to)
        self.sent: list[dict] = []

    def send(self, message: dict) -> None:
        self.sent.append(message)

    def actions(self) -> list[str]:
        return [m["action"] for m in self.sent]


class _FakeRunner(AgentRunner):
    def __init__(self, reply: str = "done", cost: float = 0.0, block: bool = False) -> None:
        self.reply = reply
        self.cost = cost
        self.block = block
        self.started = asyncio.Event()
        self.calls: list[dict] = []

    async def run_agent(self, profile, prompt, *, cwd, prompt_context=None, messages=None,
                        files=None, system_prompt=None, cancel_event=None) -> AgentRunResult:
        self.calls.append({"profile": profile, "prompt": prompt, "messages": messages})
        self.started.set()
        if self.block:
            await cancel_event.wait()
            return AgentRunResult()
        return AgentRunResult(
            messages=[ContextMessage(role=MessageRole.ASSISTANT, content=self.reply)],
            cost=self.cost,
        )

    async def generate_text(self, profile, system_prompt, prompt) -> str:
        return ""


def _make_task(tmp_path: Path, *, runner: AgentRunner | None = None, with_profile: bool = True):
    events: list[dict] = []

    async def callback(event: dict) -> None:
        events.append(event)

    profiles = {}
    if with_profile:
        profiles["default"] = AgentProfile(id="default", name="Default", model="claude-test")
    config = TaskDeskConfig(
        engine=EngineConfig(pid_files_dir=str(tmp_path / "pids"), event_callback=callback),
        aider=AiderSettings(),
        project=ProjectSettings(),
        agent_profiles=profiles,
        default_agent_profile="default" if with_profile else None,
    )
    aider = MagicMock()
    aider.start = AsyncMock()
    aider.kill = AsyncMock()
    aider.wait_for_start = AsyncMock()
    task = Task(
        "t1",
        str(tmp_path),
        config=config,
        aider_manager=aider,
        agent_runner=runner or _FakeRunner(),
    )
    return task, aider, events


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def _prompts(connector: _RecordingConnector) -> list[dict]:
    return [m for m in connector.sent if m["action"] == "prompt"]


@pytest.mark.asyncio
async def test_run_prompt_initializes_and_returns_backend_responses(tmp_path: Path) -> None:
    task, aider, events = _make_task(tmp_path)
    connector = _RecordingConnector("t1", str(tmp_path))
    task.add_connector(connector)

    running = asyncio.create_task(task.run_prompt("Add a dry run flag to the CLI"))
    await _wait_for(lambda: _prompts(connector))

    prompt = _prompts(connector)[0]
    assert prompt["prompt"] == "Add a dry run flag to the CLI"
    assert prompt["mode"] == "code"
    assert task.state == TaskState.RUNNING
    aider.start.assert_awaited_once_with(cwd=str(tmp_path))

    await task.process_response_message({
        "id": "m1",
        "content": "Added the flag.",
        "finished": True,
        "promptContext": prompt["promptContext"],
        "usageReport": {"model": "sonnet", "messageCost": 0.25},
    })
    await task.prompt_finished(prompt["promptId"])

    responses = await running
    assert [r.content for r in responses] == ["Added the flag."]
    assert task.state == TaskState.INITIALIZED
    assert task.data.name == "Add a dry run flag"
    assert task.data.aider_total_cost == pytest.approx(0.25)
    assert [m.role for m in task.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert any(e["event"] == "user_message_added" for e in events)


@pytest.mark.asyncio
async def test_second_prompt_waits_for_first_to_finish(tmp_path: Path) -> None:
    task, _, _ = _make_task(tmp_path)
    connector = _RecordingConnector("t1", str(tmp_path))
    task.add_connector(connector)

    first = asyncio.create_task(task.run_prompt("first"))
    await _wait_for(lambda: len(_prompts(connector)) == 1)
    second = asyncio.create_task(task.run_prompt("second"))
    await asyncio.sleep(0.05)

    assert len(_prompts(connector)) == 1
    assert not second.done()

    await task.prompt_finished(_prompts(connector)[0]["promptId"])
    assert await first == []

    await _wait_for(lambda: len(_prompts(connector)) == 2)
    assert _prompts(connector)[1]["prompt"] == "second"
    await task.prompt_finished(_prompts(connector)[1]["promptId"])
    assert await second == []


@pytest.mark.asyncio
async def test_stale_prompt_finished_is_ignored(tmp_path: Path) -> None:
    task, _, events = _make_task(tmp_path)
    connector = _RecordingConnector("t1", str(tmp_path))
    task.add_connector(connector)

    running = asyncio.create_task(task.run_prompt("hello"))
    await _wait_for(lambda: _prompts(connector))
    current = task.current_prompt_context
    await task.process_response_message({"id": "m1", "content": "Hel", "finished": False})

    assert await task.prompt_finished("some-old-prompt") == []
    assert task.current_prompt_context is current
    assert not running.done()
    assert not [e for e in events if e["event"] == "response_completed"]

    await task.prompt_finished(current.id)
    await running


@pytest.mark.asyncio
async def test_responses_are_ordered_by_sequence_number(tmp_path: Path) -> None:
    task, _, _ = _make_task(tmp_path)
    connector = _RecordingConnector("t1", str(tmp_path))
    task.add_connector(connector)

    running = asyncio.create_task(task.run_prompt("hello"))
    await _wait_for(lambda: _prompts(connector))
    prompt = _prompts(connector)[0]
    for message_id, seq in (("b", 2), ("a", 1), ("c", 2)):
        await task.process_response_message({
            "id": message_id, "content": message_id, "finished": True, "sequenceNumber": seq,
        })
    await task.prompt_finished(prompt["promptId"])

    responses = await running
    assert [r.message_id for r in responses] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_streamed_chunk_then_prompt_finished_emits_completion(tmp_path: Path) -> None:
    task, _, events = _make_task(tmp_path)
    connector = _RecordingConnector("t1", str(tmp_path))
    task.add_connector(connector)

    running = asyncio.create_task(task.run_prompt("hello"))
    await _wait_for(lambda: _prompts(connector))
    await task.process_response_message({"id": "m1", "content": "Hel", "finished": False})
    await task.prompt_finished(_prompts(connector)[0]["promptId"])
    await running

    chunk = [e for e in events if e["event"] == "response_chunk"]
    completed = [e for e in events if e["event"] == "response_completed"]
    assert chunk[0]["chunk"] == "Hel"
    assert completed[-1]["message_id"] == "m1"


@pytest.mark.asyncio
async def test_usage_report_without_model_uses_reported_main_model(tmp_path: Path) -> None:
    task, _, _ = _make_task(tmp_path)
    task.handle_models_update({"mainModel": "gpt-4.1"})

    response = await task.process_response_message({
        "id": "m1", "finished": True, "usageReport": {"messageCost": 0.1},
    })
    assert response.usage_report.model == "gpt-4.1"
    assert response.usage_report.aider_total_cost == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_agent_mode_runs_in_process_agent(tmp_path: Path) -> None:
    runner = _FakeRunner(reply="All done.", cost=0.5)
    task, _, _ = _make_task(tmp_path, runner=runner)
    connector = _RecordingConnector("t1", str(tmp_path), listen_to=["add-message"])
    task.add_connector(connector)

    responses = await task.run_prompt("Refactor the parser", Mode.AGENT)

    assert [r.content for r in responses] == ["All done."]
    assert runner.calls[0]["profile"].id == "default"
    assert task.data.agent_total_cost == pytest.approx(0.5)
    assert [m.role for m in task.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert connector.sent[-1] == {
        "action": "add-message", "role": "assistant", "content": "All done.", "acknowledge": False,
    }
    assert task.current_prompt_context is None


@pytest.mark.asyncio
async def test_agent_mode_without_profile_fails_and_frees_slot(tmp_path: Path) -> None:
    task, _, _ = _make_task(tmp_path, with_profile=False)

    with pytest.raises(ConfigurationError):
        await task.run_prompt("Refactor the parser", Mode.AGENT)

    assert task.current_prompt_context is None
    assert task.state == TaskState.INITIALIZED


@pytest.mark.asyncio
async def test_prompt_answers_pending_question_instead_of_running(tmp_path: Path) -> None:
    task, aider, _ = _make_task(tmp_path)
    asker = asyncio.create_task(task.ask_question(QuestionData(text="Create new file?")))
    await _wait_for(lambda: task.current_question is not None)

    assert await task.run_prompt("use tabs instead") == []
    assert await asker == ("n", "use tabs instead")
    aider.start.assert_not_awaited()


@pytest.mark.asyncio
async def test_interrupt_stops_agent_run_and_cancels_question(tmp_path: Path) -> None:
    runner = _FakeRunner(block=True)
    task, _, _ = _make_task(tmp_path, runner=runner)
    connector = _RecordingConnector("t1", str(tmp_path))
    task.add_connector(connector)

    running = asyncio.create_task(task.run_prompt("long job", Mode.AGENT))
    await asyncio.wait_for(runner.started.wait(), 2.0)
    asker = asyncio.create_task(task.ask_question(QuestionData(text="Run tests?")))
    await _wait_for(lambda: task.current_question is not None)

    await task.interrupt_response()

    assert await asyncio.wait_for(running, 2.0) == []
    assert await asker == ("n", "Cancelled")
    assert "interrupt-response" in connector.actions()
    assert task.current_prompt_context is None


class _GatedRunner(AgentRunner):
    """First run parks on a gate; every run records whether it was cancelled."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        self.cancelled: list[tuple[str, bool]] = []
        self.active = 0
        self.max_active = 0

    async def run_agent(self, profile, prompt, *, cwd, prompt_context=None, messages=None,
                        files=None, system_prompt=None, cancel_event=None) -> AgentRunResult:
        first = not self.started.is_set()
        self.started.set()
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if first:
                await self.gate.wait()
            await asyncio.sleep(0.01)
        finally:
            self.active -= 1
        self.cancelled.append((prompt, cancel_event.is_set()))
        return AgentRunResult(messages=[ContextMessage(role=MessageRole.ASSISTANT, content=prompt)])

    async def generate_text(self, profile, system_prompt, prompt) -> str:
        return ""


@pytest.mark.asyncio
async def test_interrupted_agent_run_stays_cancelled_when_next_prompt_starts(tmp_path: Path) -> None:
    runner = _GatedRunner()
    task, _, _ = _make_task(tmp_path, runner=runner)

    first = asyncio.create_task(task.run_prompt("first", Mode.AGENT))
    await asyncio.wait_for(runner.started.wait(), 2.0)
    await task.interrupt_response()

    second = asyncio.create_task(task.run_prompt("second", Mode.AGENT))
    await _wait_for(lambda: task.current_prompt_context is not None)
    runner.gate.set()

    await asyncio.wait_for(asyncio.gather(first, second), 2.0)
    assert runner.cancelled == [("first", True), ("second", False)]
    assert runner.max_active == 1
    assert task.current_prompt_context is None


@pytest.mark.asyncio
async def test_concurrent_agent_prompts_run_one_at_a_time(tmp_path: Path) -> None:
    runner = _GatedRunner()
    runner.gate.set()
    task, _, _ = _make_task(tmp_path, runner=runner)

    results = await asyncio.wait_for(asyncio.gather(
        task.run_prompt("one", Mode.AGENT),
        task.run_prompt("two", Mode.AGENT),
        task.run_prompt("three", Mode.AGENT),
    ), 2.0)

    assert [[r.content for r in responses] for responses in results] == [["one"], ["two"], ["three"]]
    assert runner.max_active == 1
    assert [prompt for prompt, _ in runner.cancelled] == ["one", "two", "three"]


@pytest.mark.asyncio
async def test_concurrent_prompts_on_uninitialized_task_wait_for_init(tmp_path: Path) -> None:
    task, aider, _ = _make_task(tmp_path)
    backend_started = asyncio.Event()

    async def slow_start(cwd=None) -> None:
        await backend_started.wait()

    aider.start.side_effect = slow_start
    connector = _RecordingConnector("t1", str(tmp_path))
    task.add_connector(connector)

    first = asyncio.create_task(task.run_prompt("first"))
    second = asyncio.create_task(task.run_prompt("second"))
    await _wait_for(lambda: aider.start.await_count == 1)
    await asyncio.sleep(0.02)

    assert task.state == TaskState.INITIALIZING
    assert _prompts(connector) == []

    backend_started.set()
    await _wait_for(lambda: len(_prompts(connector)) == 1)
    await task.prompt_finished(_prompts(connector)[0]["promptId"])
    await _wait_for(lambda: len(_prompts(connector)) == 2)
    await task.prompt_finished(_prompts(connector)[1]["promptId"])

    await asyncio.wait_for(asyncio.gather(first, second), 2.0)
    assert [p["prompt"] for p in _prompts(connector)] == ["first", "second"]
    assert aider.start.await_count == 1


@pytest.mark.asyncio
async def test_interrupt_when_idle_is_harmless(tmp_path: Path) -> None:
    task, _, _ = _make_task(tmp_path)
    await task.interrupt_response()
    assert task.current_prompt_context is None


@pytest.mark.asyncio
async def test_failed_init_returns_to_uninitialized(tmp_path: Path) -> None:
    task, aider, _ = _make_task(tmp_path)
    aider.start.side_effect = ProcessControlError("t1", "start", "no python")

    with pytest.raises(ProcessControlError):
        await task.init()
    assert task.state == TaskState.UNINITIALIZED

    aider.start.side_effect = None
    await task.init()
    assert task.state == TaskState.INITIALIZED


@pytest.mark.asyncio
async def test_add_connector_replays_context_files(tmp_path: Path) -> None:
    task, _, _ = _make_task(tmp_path)
    await task.add_file(ContextFile(path="a.py"))
    await task.add_file(ContextFile(path="b.py", read_only=True))
    assert not await task.add_file(ContextFile(path="a.py"))

    connector = _RecordingConnector("t1", str(tmp_path), listen_to=["add-file"])
    task.add_connector(connector)

    assert connector.sent == [
        {"action": "add-file", "path": "a.py", "readOnly": False, "noUpdate": True},
        {"action": "add-file", "path": "b.py", "readOnly": True, "noUpdate": False},
    ]


@pytest.mark.asyncio
async def test_connector_for_other_task_is_ignored(tmp_path: Path) -> None:
    task, _, _ = _make_task(tmp_path)
    task.add_connector(_RecordingConnector("other", str(tmp_path)))
    assert task.connectors == []


@pytest.mark.asyncio
async def test_drop_file_notifies_connectors(tmp_path: Path) -> None:
    task, _, events = _make_task(tmp_path)
    connector = _RecordingConnector("t1", str(tmp_path), listen_to=["drop-file"])
    task.add_connector(connector)
    await task.add_file(ContextFile(path="a.py", read_only=True))

    assert await task.drop_file("a.py")
    assert not await task.drop_file("a.py")
    assert connector.sent == [{"action": "drop-file", "path": "a.py", "readOnly": True}]
    assert [e for e in events if e["event"] == "context_files_updated"][-1]["files"] == []


@pytest.mark.asyncio
async def test_close_removes_unnamed_task(tmp_path: Path) -> None:
    task, aider, events = _make_task(tmp_path)
    await task.init()
    task.add_todo("write tests")
    task_dir = tmp_path / ".taskdesk" / "tasks" / "t1"
    assert task_dir.exists()

    await task.close()

    aider.kill.assert_awaited_once()
    assert task.state == TaskState.CLOSED
    assert not task_dir.exists()
    assert events[-1] == {"event": "task_closed", "task_id": "t1", "base_dir": str(tmp_path), "deleted": True}


@pytest.mark.asyncio
async def test_close_keeps_saved_task(tmp_path: Path) -> None:
    task, _, _ = _make_task(tmp_path)
    await task.update_task(name="Keep me")
    await task.close()
    assert (tmp_path / ".taskdesk" / "tasks" / "t1" / "settings.json").is_file()


@pytest.mark.asyncio
async def test_update_task_rejects_unknown_field(tmp_path: Path) -> None:
    task, _, _ = _make_task(tmp_path)
    with pytest.raises(ValueError):
        await task.update_task(colour="blue")


@pytest.mark.asyncio
async def test_todo_operations(tmp_path: Path) -> None:
    task, _, _ = _make_task(tmp_path)
    assert task.get_todos() == []
    task.add_todo("parse args")
    task.add_todo("write docs")
    items = task.update_todo("parse args", completed=True)
    assert [(i.name, i.completed) for i in items] == [("parse args", True), ("write docs", False)]
    assert [i.name for i in task.delete_todo("write docs")] == ["parse args"]
    assert task.clear_all_todos() == []
    assert task.get_todos() == []
