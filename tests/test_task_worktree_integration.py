from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from taskdesk.engine.backends.agent import AgentRunner, AgentRunResult
from taskdesk.engine.config import AiderSettings, EngineConfig, ProjectSettings
from taskdesk.engine.errors import (
    ConfigurationError,
    GitCommandError,
    MergeStateNotFoundError,
    NoWorktreeError,
)
from taskdesk.engine.models import (
    AgentProfile,
    ConflictContext,
    ContextMessage,
    MergeState,
    MessageRole,
    WorkingMode,
    Worktree,
    WorktreeIntegrationStatus,
)
from taskdesk.engine.task import MERGE_CONFLICTS_KEY, Task
from taskdesk.engine.worktrees import WorktreeManager
from taskdesk.engine.yaml_config import TaskDeskConfig


class _ScriptedRunner(AgentRunner):
    """Commit messages from ``commit_message``; conflict passes fail for ``failing`` files."""

    def __init__(
        self,
        commit_message: str | Exception = "",
        failing: set[str] | None = None,
        conflicts_dir: Path | None = None,
    ) -> None:
        self.commit_message = commit_message
        self.failing = failing or set()
        self.conflicts_dir = conflicts_dir
        self.runs: list[dict] = []

    async def run_agent(self, profile, prompt, *, cwd, prompt_context=None, messages=None,
                        files=None, system_prompt=None, cancel_event=None) -> AgentRunResult:
        file_path = files[0].path
        snapshots = {
            stage: Path(f"{self.conflicts_dir / file_path}.{stage}").read_text()
            for stage in ("base", "ours", "theirs")
        }
        self.runs.append({"profile": profile, "file": file_path, "snapshots": snapshots, "cwd": cwd})
        if file_path in self.failing:
            raise RuntimeError("model refused")
        return AgentRunResult(messages=[
            ContextMessage(role=MessageRole.ASSISTANT, content=f"Resolved {file_path}"),
        ])

    async def generate_text(self, profile, system_prompt, prompt) -> str:
        if isinstance(self.commit_message, Exception):
            raise self.commit_message
        return self.commit_message


def _make_task(tmp_path: Path, runner: AgentRunner, *, with_profile: bool = True):
    events: list[dict] = []

    async def callback(event: dict) -> None:
        events.append(event)

    profiles = {}
    if with_profile:
        profiles["default"] = AgentProfile(id="default", name="Default", provider="anthropic", model="claude-test")
    config = TaskDeskConfig(
        engine=EngineConfig(pid_files_dir=str(tmp_path / "pids"), event_callback=callback),
        aider=AiderSettings(),
        project=ProjectSettings(),
        agent_profiles=profiles,
        default_agent_profile="default" if with_profile else None,
    )
    worktrees = MagicMock(spec=WorktreeManager)
    worktrees.get_project_main_branch.return_value = "main"
    worktrees.get_integration_status.return_value = WorktreeIntegrationStatus(target_branch="main")
    worktrees.conflicts_dir.return_value = tmp_path / "conflicts"
    aider = MagicMock()
    aider.start = AsyncMock()
    aider.kill = AsyncMock()
    task = Task(
        "t1",
        str(tmp_path),
        config=config,
        agent_runner=runner,
        worktree_manager=worktrees,
        aider_manager=aider,
    )
    task.data.working_mode = WorkingMode.WORKTREE
    task.data.worktree = Worktree(path=str(tmp_path / "wt"))
    return task, worktrees, events


def _merge_state() -> MergeState:
    return MergeState(
        before_merge_commit_hash="a" * 40,
        worktree_branch_commit_hash="b" * 40,
        target_branch="main",
        squash=True,
    )


def _logs(events: list[dict]) -> list[dict]:
    return [e for e in events if e["event"] == "log_message"]


@pytest.mark.asyncio
async def test_squash_merge_uses_generated_commit_message(tmp_path: Path) -> None:
    task, worktrees, events = _make_task(tmp_path, _ScriptedRunner("feat: add dry-run flag\n"))
    worktrees.get_changes_diff.return_value = "diff --git a/cli.py b/cli.py"
    worktrees.merge_worktree_to_main.return_value = _merge_state()

    await task.merge_to_main(squash=True)

    worktrees.merge_worktree_to_main.assert_awaited_once_with(
        str(tmp_path), "t1", str(tmp_path / "wt"), True, "feat: add dry-run flag", None,
    )
    assert task.data.last_merge_state.before_merge_commit_hash == "a" * 40
    assert _logs(events)[-1]["message"] == "Successfully squashed and merged worktree to main branch"
    assert any(e["event"] == "worktree_integration_status_updated" for e in events)


@pytest.mark.asyncio
async def test_squash_merge_falls_back_to_task_name_when_generation_fails(tmp_path: Path) -> None:
    task, worktrees, _ = _make_task(tmp_path, _ScriptedRunner(RuntimeError("rate limited")))
    task.data.name = "Add dry run flag"
    worktrees.get_changes_diff.return_value = "diff --git a/cli.py b/cli.py"
    worktrees.merge_worktree_to_main.return_value = _merge_state()

    await task.merge_to_main(squash=True)

    assert worktrees.merge_worktree_to_main.await_args.args[4] == "Add dry run flag"


@pytest.mark.asyncio
async def test_squash_merge_without_name_or_diff_uses_task_id(tmp_path: Path) -> None:
    runner = _ScriptedRunner("should not be used")
    task, worktrees, _ = _make_task(tmp_path, runner)
    worktrees.get_changes_diff.return_value = ""
    worktrees.merge_worktree_to_main.return_value = _merge_state()

    await task.merge_to_main(squash=True)

    assert worktrees.merge_worktree_to_main.await_args.args[4] == "Task t1 changes"


@pytest.mark.asyncio
async def test_squash_merge_without_profile_uses_task_name(tmp_path: Path) -> None:
    task, worktrees, _ = _make_task(tmp_path, _ScriptedRunner("unused"), with_profile=False)
    task.data.name = "Fix parser"
    worktrees.get_changes_diff.return_value = "diff --git a/p.py b/p.py"
    worktrees.merge_worktree_to_main.return_value = _merge_state()

    await task.merge_to_main(squash=True)

    assert worktrees.merge_worktree_to_main.await_args.args[4] == "Fix parser"


@pytest.mark.asyncio
async def test_explicit_commit_message_skips_generation(tmp_path: Path) -> None:
    task, worktrees, _ = _make_task(tmp_path, _ScriptedRunner("generated"))
    worktrees.merge_worktree_to_main.return_value = _merge_state()

    await task.merge_to_main(squash=True, target_branch="release", commit_message="chore: ship")

    worktrees.get_changes_diff.assert_not_awaited()
    worktrees.merge_worktree_to_main.assert_awaited_once_with(
        str(tmp_path), "t1", str(tmp_path / "wt"), True, "chore: ship", "release",
    )


@pytest.mark.asyncio
async def test_merge_conflict_is_reported_not_raised(tmp_path: Path) -> None:
    task, worktrees, events = _make_task(tmp_path, _ScriptedRunner())
    worktrees.merge_worktree_to_main.side_effect = GitCommandError(
        ["git", "merge", "--no-ff", "taskdesk/t1"],
        "CONFLICT (content): Merge conflict in cli.py\nAutomatic merge failed",
        1,
    )

    await task.merge_to_main()

    last = _logs(events)[-1]
    assert last["level"] == "error"
    assert last["message"] == MERGE_CONFLICTS_KEY
    assert last["action_ids"] == ["rebase-worktree"]
    assert task.data.last_merge_state is None


@pytest.mark.asyncio
async def test_merge_requires_worktree(tmp_path: Path) -> None:
    task, _, _ = _make_task(tmp_path, _ScriptedRunner())
    task.data.worktree = None
    with pytest.raises(NoWorktreeError):
        await task.merge_to_main()


@pytest.mark.asyncio
async def test_revert_without_merge_state_raises(tmp_path: Path) -> None:
    task, worktrees, _ = _make_task(tmp_path, _ScriptedRunner())

    with pytest.raises(MergeStateNotFoundError, match="No merge state found to revert for task t1"):
        await task.revert_last_merge()
    worktrees.revert_merge.assert_not_awaited()


@pytest.mark.asyncio
async def test_revert_consumes_merge_state(tmp_path: Path) -> None:
    task, worktrees, _ = _make_task(tmp_path, _ScriptedRunner())
    state = _merge_state()
    task.data.last_merge_state = state

    await task.revert_last_merge()

    worktrees.revert_merge.assert_awaited_once_with(str(tmp_path), "t1", str(tmp_path / "wt"), state)
    assert task.data.last_merge_state is None
    with pytest.raises(MergeStateNotFoundError):
        await task.revert_last_merge()


@pytest.mark.asyncio
async def test_rebase_conflict_offers_agent_resolution(tmp_path: Path) -> None:
    task, worktrees, events = _make_task(tmp_path, _ScriptedRunner())
    worktrees.rebase_from_branch.side_effect = GitCommandError(
        ["git", "rebase", "main"], "CONFLICT (content): Merge conflict in a.py\nResolve all conflicts manually", 1,
    )

    await task.rebase_from_branch()

    worktrees.rebase_from_branch.assert_awaited_once_with(str(tmp_path / "wt"), "main")
    assert _logs(events)[-1]["action_ids"] == ["abort-rebase", "resolve-conflicts-with-agent"]


@pytest.mark.asyncio
async def test_plain_git_failure_is_reported_verbatim(tmp_path: Path) -> None:
    task, worktrees, events = _make_task(tmp_path, _ScriptedRunner())
    worktrees.continue_rebase.side_effect = GitCommandError(
        ["git", "rebase", "--continue"], "fatal: No rebase in progress?", 128,
    )

    await task.continue_rebase()

    last = _logs(events)[-1]
    assert last["level"] == "error"
    assert last["message"] == "Command 'git rebase --continue' failed (128): fatal: No rebase in progress?"
    assert last["action_ids"] == []


def _setup_conflicts(worktrees: MagicMock, files: list[str]) -> None:
    worktrees.list_conflicted_files.return_value = files
    worktrees.collect_conflict_context.side_effect = lambda wt, f: ConflictContext(
        file_path=f, base=f"base {f}", ours=f"ours {f}", theirs=f"theirs {f}",
    )


def _leftover_snapshots(tmp_path: Path) -> list[Path]:
    return [p for p in (tmp_path / "conflicts").rglob("*") if p.is_file()]


@pytest.mark.asyncio
async def test_resolve_conflicts_runs_one_pass_per_file(tmp_path: Path, monkeypatch) -> None:
    runner = _ScriptedRunner(conflicts_dir=tmp_path / "conflicts")
    task, worktrees, events = _make_task(tmp_path, runner)
    files = ["a.py", "src/b.py", "c.py"]
    _setup_conflicts(worktrees, files)
    run_git = AsyncMock(return_value="")
    monkeypatch.setattr("taskdesk.engine.task.run_git", run_git)

    resolved = await task.resolve_conflicts_with_agent()

    assert resolved == files
    assert sorted(r["file"] for r in runner.runs) == sorted(files)
    for run in runner.runs:
        assert run["profile"].id == "conflict-resolution"
        assert run["profile"].model == "claude-test"
        assert run["snapshots"]["ours"] == f"ours {run['file']}"
        assert run["cwd"] == str(tmp_path / "wt")
    staged = sorted(call.args[0][2] for call in run_git.await_args_list)
    assert staged == sorted(files)
    assert _leftover_snapshots(tmp_path) == []
    assert _logs(events)[-1]["action_ids"] == ["continue-rebase", "abort-rebase"]


@pytest.mark.asyncio
async def test_resolve_conflicts_isolates_failing_file(tmp_path: Path, monkeypatch) -> None:
    runner = _ScriptedRunner(failing={"src/b.py"}, conflicts_dir=tmp_path / "conflicts")
    task, worktrees, events = _make_task(tmp_path, runner)
    _setup_conflicts(worktrees, ["a.py", "src/b.py", "c.py"])
    run_git = AsyncMock(return_value="")
    monkeypatch.setattr("taskdesk.engine.task.run_git", run_git)

    resolved = await task.resolve_conflicts_with_agent()

    assert resolved == ["a.py", "c.py"]
    staged = sorted(call.args[0][2] for call in run_git.await_args_list)
    assert staged == ["a.py", "c.py"]
    assert _leftover_snapshots(tmp_path) == []
    last = _logs(events)[-1]
    assert last["level"] == "warning"
    assert "src/b.py" in last["message"]
    assert last["action_ids"] == ["resolve-conflicts-with-agent", "abort-rebase"]


@pytest.mark.asyncio
async def test_resolve_conflicts_with_nothing_conflicted(tmp_path: Path) -> None:
    runner = _ScriptedRunner()
    task, worktrees, events = _make_task(tmp_path, runner)
    worktrees.list_conflicted_files.return_value = []

    assert await task.resolve_conflicts_with_agent() == []
    assert runner.runs == []
    assert _logs(events)[-1]["message"] == "No conflicted files found"


@pytest.mark.asyncio
async def test_resolve_conflicts_requires_agent_profile(tmp_path: Path) -> None:
    task, _, _ = _make_task(tmp_path, _ScriptedRunner(), with_profile=False)
    with pytest.raises(ConfigurationError):
        await task.resolve_conflicts_with_agent()


@pytest.mark.asyncio
async def test_integration_status_is_none_in_local_mode(tmp_path: Path) -> None:
    task, worktrees, _ = _make_task(tmp_path, _ScriptedRunner())
    task.data.worktree = None

    assert await task.get_integration_status() is None
    worktrees.get_integration_status.assert_not_awaited()
