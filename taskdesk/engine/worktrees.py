"""Per-task git worktrees and their integration into the main tree.

Layout:
    <base_dir>/<data_dir>/worktrees/<task_id>     worktree checkout
    <base_dir>/<data_dir>/tmp/conflicts/...        conflict snapshots

The data directory is added to the repository's info/exclude so the
nested worktrees never show up as untracked content of the main tree.

Merges stash any uncommitted work in the main tree first and restore
it afterwards; the returned MergeState is enough to undo the merge.
"""
from __future__ import annotations

import logging
import re
import shutil
import time
from pathlib import Path

from .errors import GitCommandError
from .git import git_output, run_git
from .models import (
    CommitInfo,
    ConflictContext,
    MergeState,
    RebaseState,
    UnmergedWork,
    Worktree,
    WorktreeIntegrationStatus,
)

logger = logging.getLogger(__name__)

_BRANCH_WORD_LIMIT = 7


def generate_branch_name(name: str, task_id: str, prefix: str = "taskdesk/") -> str:
    """Branch name from the first few sanitized words of *name*.

    Falls back to *task_id* when nothing usable remains.
    """
    cleaned = re.sub(r"[^a-z0-9\s-]", "", (name or "").lower())
    slug = "-".join(cleaned.split()[:_BRANCH_WORD_LIMIT])
    slug = re.sub(r"^[.-]+", "", slug)
    slug = re.sub(r"-+", "-", slug).rstrip("-")
    return f"{prefix}{slug or task_id}"


def _parse_status_paths(status: str) -> list[str]:
    files: list[str] = []
    for line in status.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        files.append(path.strip().strip('"'))
    return files


class WorktreeManager:
    """Git worktree lifecycle plus merge, rebase and conflict helpers."""

    def __init__(self, data_dir_name: str = ".taskdesk") -> None:
        self._data_dir_name = data_dir_name

    # ── Paths ────────────────────────────────────────────────

    def data_dir(self, base_dir: str) -> Path:
        return Path(base_dir) / self._data_dir_name

    def worktree_path(self, base_dir: str, task_id: str) -> Path:
        return self.data_dir(base_dir) / "worktrees" / task_id

    def conflicts_dir(self, base_dir: str) -> Path:
        return self.data_dir(base_dir) / "tmp" / "conflicts"

    async def _ensure_excluded(self, base_dir: str) -> None:
        common_dir = (await run_git(["rev-parse", "--git-common-dir"], base_dir)).strip()
        exclude = Path(base_dir, common_dir) / "info" / "exclude"
        pattern = f"/{self._data_dir_name}/"
        existing = exclude.read_text() if exclude.exists() else ""
        if pattern in existing.splitlines():
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        with open(exclude, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(pattern + "\n")
        logger.debug("Added %s to %s", pattern, exclude)

    # ── Branch helpers ───────────────────────────────────────

    async def get_current_branch(self, path: str) -> str:
        return (await run_git(["rev-parse", "--abbrev-ref", "HEAD"], path)).strip()

    async def rev_parse(self, ref: str, path: str) -> str:
        return (await run_git(["rev-parse", ref], path)).strip()

    async def branch_exists(self, base_dir: str, branch: str) -> bool:
        code, _, _ = await git_output(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], base_dir,
        )
        return code == 0

    async def get_project_main_branch(self, base_dir: str) -> str:
        """Branch checked out in the main tree, else main/master."""
        code, stdout, _ = await git_output(["symbolic-ref", "--short", "-q", "HEAD"], base_dir)
        if code == 0 and stdout.strip():
            return stdout.strip()
        for candidate in ("main", "master"):
            if await self.branch_exists(base_dir, candidate):
                return candidate
        return "HEAD"

    # ── Worktree lifecycle ───────────────────────────────────

    async def list_worktrees(self, base_dir: str) -> list[Worktree]:
        out = await run_git(["worktree", "list", "--porcelain"], base_dir)
        worktrees: list[Worktree] = []
        for block in out.strip().split("\n\n"):
            fields: dict[str, str] = {}
            for line in block.splitlines():
                key, _, value = line.partition(" ")
                fields[key] = value
            if "worktree" not in fields:
                continue
            worktrees.append(Worktree(
                path=fields["worktree"],
                base_branch=fields.get("branch", "").removeprefix("refs/heads/") or None,
                base_commit=fields.get("HEAD"),
            ))
        return worktrees

    async def get_task_worktree(self, base_dir: str, task_id: str) -> Worktree | None:
        expected = self.worktree_path(base_dir, task_id)
        if not expected.exists():
            return None
        resolved = expected.resolve()
        for wt in await self.list_worktrees(base_dir):
            if Path(wt.path).resolve() == resolved:
                return Worktree(path=str(expected), base_branch=wt.base_branch, base_commit=wt.base_commit)
        return None

    async def create_worktree(
        self,
        base_dir: str,
        task_id: str,
        branch_name: str,
        base_branch: str | None = None,
    ) -> Worktree:
        await self._ensure_excluded(base_dir)
        path = self.worktree_path(base_dir, task_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        base_branch = base_branch or await self.get_project_main_branch(base_dir)
        base_commit = await self.rev_parse(base_branch, base_dir)

        if await self.branch_exists(base_dir, branch_name):
            await run_git(["worktree", "add", str(path), branch_name], base_dir)
        else:
            await run_git(["worktree", "add", "-b", branch_name, str(path), base_branch], base_dir)
        logger.info(
            "Created worktree %s on branch %s from %s@%s",
            path, branch_name, base_branch, base_commit[:8],
        )
        return Worktree(path=str(path), base_branch=base_branch, base_commit=base_commit)

    async def remove_worktree(self, base_dir: str, worktree: Worktree) -> None:
        """Remove the worktree and delete its branch (best effort)."""
        branch: str | None = None
        try:
            branch = await self.get_current_branch(worktree.path)
        except (GitCommandError, OSError) as exc:
            logger.debug("Could not read branch of %s: %s", worktree.path, exc)

        try:
            await run_git(["worktree", "remove", "--force", worktree.path], base_dir)
        except GitCommandError as exc:
            logger.warning("git worktree remove failed, removing directory: %s", exc)
            shutil.rmtree(worktree.path, ignore_errors=True)
            await run_git(["worktree", "prune"], base_dir)

        if branch and branch != "HEAD":
            try:
                await run_git(["branch", "-D", branch], base_dir)
            except GitCommandError as exc:
                logger.warning("Could not delete branch %s: %s", branch, exc)
        logger.info("Removed worktree %s", worktree.path)

    # ── Working tree state ───────────────────────────────────

    async def get_uncommitted_files(self, path: str) -> list[str]:
        status = await run_git(["status", "--porcelain=v1", "--untracked-files=all"], path)
        return _parse_status_paths(status)

    async def has_uncommitted_changes(self, path: str) -> bool:
        status = await run_git(["status", "--porcelain=v1"], path)
        return bool(status.strip())

    async def stash_uncommitted_changes(self, stash_id: str, path: str, message: str) -> str | None:
        """Stash everything (including untracked files). None when clean."""
        if not await self.has_uncommitted_changes(path):
            return None
        await run_git(["stash", "push", "-u", "-m", f"{stash_id}: {message}"], path)
        logger.debug("Stashed changes in %s as %s", path, stash_id)
        return stash_id

    async def find_stash_ref(self, path: str, stash_id: str) -> str | None:
        out = await run_git(["stash", "list", "--format=%gd%x09%gs"], path)
        for line in out.splitlines():
            ref, _, subject = line.partition("\t")
            if f"{stash_id}:" in subject:
                return ref
        return None

    async def apply_stash(self, path: str, stash_id: str, *, drop: bool = True) -> None:
        ref = await self.find_stash_ref(path, stash_id)
        if ref is None:
            raise GitCommandError(["git", "stash", "apply", stash_id], f"Stash {stash_id} not found")
        await run_git(["stash", "apply", "--index", ref], path)
        if drop:
            await run_git(["stash", "drop", ref], path)

    async def get_changes_diff(self, base_dir: str, worktree_path: str, target_branch: str | None = None) -> str:
        """Diff of everything the worktree has that the target branch lacks."""
        target = target_branch or await self.get_project_main_branch(base_dir)
        committed = await run_git(["diff", f"{target}...HEAD"], worktree_path)
        uncommitted = await run_git(["diff", "HEAD"], worktree_path)
        untracked = await run_git(["ls-files", "--others", "--exclude-standard"], worktree_path)
        parts = [committed.strip(), uncommitted.strip()]
        parts += [f"New file: {name}" for name in untracked.splitlines() if name.strip()]
        return "\n".join(p for p in parts if p)

    # ── Merge / revert ───────────────────────────────────────

    async def merge_worktree_to_main(
        self,
        base_dir: str,
        task_id: str,
        worktree_path: str,
        squash: bool,
        commit_message: str | None = None,
        target_branch: str | None = None,
    ) -> MergeState:
        """Merge the worktree branch (including uncommitted work) into the target branch."""
        target = target_branch or await self.get_project_main_branch(base_dir)
        worktree_branch = await self.get_current_branch(worktree_path)
        original_head = await self.rev_parse("HEAD", worktree_path)

        auto_committed = False
        if await self.has_uncommitted_changes(worktree_path):
            await run_git(["add", "-A"], worktree_path)
            await run_git(
                ["commit", "-m", commit_message or f"Task {task_id} uncommitted changes"],
                worktree_path,
            )
            auto_committed = True
        worktree_tip = await self.rev_parse("HEAD", worktree_path)

        stash_id = f"taskdesk-merge-{task_id}-{int(time.time() * 1000)}"
        main_stash = await self.stash_uncommitted_changes(
            stash_id, base_dir, f"Before merging task {task_id}",
        )
        try:
            if await self.get_current_branch(base_dir) != target:
                await run_git(["checkout", target], base_dir)
            before = await self.rev_parse("HEAD", base_dir)
            try:
                if squash:
                    await run_git(["merge", "--squash", worktree_branch], base_dir)
                    code, _, _ = await git_output(["diff", "--cached", "--quiet"], base_dir)
                    if code != 0:
                        await run_git(
                            ["commit", "-m", commit_message or f"Task {task_id} changes"],
                            base_dir,
                        )
                else:
                    await run_git(["merge", "--no-ff", "--no-edit", worktree_branch], base_dir)
            except GitCommandError:
                logger.warning("Merge of %s into %s failed, resetting main tree", worktree_branch, target)
                await git_output(["merge", "--abort"], base_dir)
                await run_git(["reset", "--hard", before], base_dir)
                if auto_committed:
                    await run_git(["reset", "--mixed", original_head], worktree_path)
                raise
        finally:
            if main_stash:
                try:
                    await self.apply_stash(base_dir, main_stash)
                except GitCommandError as exc:
                    logger.warning(
                        "Could not restore main tree changes, kept in stash %s: %s",
                        main_stash, exc,
                    )

        if squash:
            # Squashed commits would otherwise stay "ahead" forever.
            await run_git(["reset", "--hard", target], worktree_path)

        state = MergeState(
            before_merge_commit_hash=before,
            worktree_branch_commit_hash=worktree_tip,
            target_branch=target,
            squash=squash,
            main_original_stash_id=main_stash,
            worktree_original_head=original_head if auto_committed else None,
        )
        logger.info(
            "Merged %s into %s (squash=%s) before=%s",
            worktree_branch, target, squash, before[:8],
        )
        return state

    async def revert_merge(self, base_dir: str, task_id: str, worktree_path: str, state: MergeState) -> None:
        """Undo a merge recorded in *state*, keeping any newer uncommitted work."""
        if await self.get_current_branch(base_dir) != state.target_branch:
            await run_git(["checkout", state.target_branch], base_dir)

        stamp = int(time.time() * 1000)
        main_stash = await self.stash_uncommitted_changes(
            f"taskdesk-revert-{task_id}-{stamp}", base_dir, "Before reverting merge",
        )
        try:
            await run_git(["reset", "--hard", state.before_merge_commit_hash], base_dir)
        finally:
            if main_stash:
                await self.apply_stash(base_dir, main_stash)
        await self._restore_leftover_merge_stash(base_dir, state)

        wt_stash = await self.stash_uncommitted_changes(
            f"taskdesk-revert-wt-{task_id}-{stamp}", worktree_path, "Before reverting merge",
        )
        try:
            await run_git(["reset", "--hard", state.worktree_branch_commit_hash], worktree_path)
            if state.worktree_original_head:
                await run_git(["reset", "--mixed", state.worktree_original_head], worktree_path)
        finally:
            if wt_stash:
                await self.apply_stash(worktree_path, wt_stash)
        logger.info("Reverted merge into %s to %s", state.target_branch, state.before_merge_commit_hash[:8])

    async def _restore_leftover_merge_stash(self, base_dir: str, state: MergeState) -> None:
        """Re-apply main tree changes the merge stashed but could not restore."""
        stash_id = state.main_original_stash_id
        if not stash_id or await self.find_stash_ref(base_dir, stash_id) is None:
            return
        try:
            await self.apply_stash(base_dir, stash_id)
            logger.info("Restored main tree changes from %s", stash_id)
        except GitCommandError as exc:
            logger.warning("Could not restore %s, left in the stash list: %s", stash_id, exc)

    async def apply_uncommitted_changes(
        self,
        base_dir: str,
        task_id: str,
        worktree_path: str,
        target_branch: str | None = None,
    ) -> bool:
        """Move uncommitted worktree changes into the main tree. False when there were none."""
        target = target_branch or await self.get_project_main_branch(base_dir)
        stash_id = f"taskdesk-apply-{task_id}-{int(time.time() * 1000)}"
        stashed = await self.stash_uncommitted_changes(
            stash_id, worktree_path, f"Uncommitted changes of task {task_id}",
        )
        if stashed is None:
            return False

        # Stashes are shared by every worktree of the repository.
        ref = await self.find_stash_ref(base_dir, stash_id)
        try:
            if await self.get_current_branch(base_dir) != target:
                await run_git(["checkout", target], base_dir)
            await run_git(["stash", "apply", ref or stash_id], base_dir)
        except GitCommandError:
            logger.warning("Applying %s to main failed, restoring worktree changes", stash_id)
            await self.apply_stash(worktree_path, stash_id)
            raise
        await run_git(["stash", "drop", ref or stash_id], base_dir)
        return True

    # ── Rebase ───────────────────────────────────────────────

    async def rebase_from_branch(self, worktree_path: str, from_branch: str) -> None:
        await run_git(["rebase", "--autostash", from_branch], worktree_path)

    async def abort_rebase(self, worktree_path: str) -> None:
        await run_git(["rebase", "--abort"], worktree_path)

    async def continue_rebase(self, worktree_path: str) -> None:
        await run_git(["rebase", "--continue"], worktree_path, env={"GIT_EDITOR": "true"})

    async def get_rebase_state(self, worktree_path: str) -> RebaseState:
        git_dir = Path((await run_git(["rev-parse", "--absolute-git-dir"], worktree_path)).strip())
        merge_dir = git_dir / "rebase-merge"
        apply_dir = git_dir / "rebase-apply"
        if not merge_dir.is_dir() and not apply_dir.is_dir():
            return RebaseState(in_progress=False)
        onto_file = merge_dir / "onto" if merge_dir.is_dir() else apply_dir / "onto"
        onto = onto_file.read_text().strip() if onto_file.exists() else None
        return RebaseState(
            in_progress=True,
            onto=onto,
            conflicted_files=await self.list_conflicted_files(worktree_path),
        )

    # ── Conflicts ────────────────────────────────────────────

    async def list_conflicted_files(self, worktree_path: str) -> list[str]:
        out = await run_git(["diff", "--name-only", "--diff-filter=U"], worktree_path)
        return [line.strip() for line in out.splitlines() if line.strip()]

    async def collect_conflict_context(self, worktree_path: str, file_path: str) -> ConflictContext:
        """Read base/ours/theirs index stages of a conflicted file."""
        stages: list[str | None] = []
        for stage in (1, 2, 3):
            code, stdout, _ = await git_output(["show", f":{stage}:{file_path}"], worktree_path)
            stages.append(stdout if code == 0 else None)
        return ConflictContext(file_path=file_path, base=stages[0], ours=stages[1], theirs=stages[2])

    async def predict_conflicts(self, worktree_path: str, target_branch: str) -> list[str]:
        """Files that would conflict when merging HEAD with *target_branch*."""
        code, stdout, stderr = await git_output(
            ["merge-tree", "--write-tree", "--name-only", "--no-messages", target_branch, "HEAD"],
            worktree_path,
        )
        if code == 0:
            return []
        if code != 1:
            logger.debug("merge-tree unavailable or failed (%d): %s", code, stderr.strip())
            return []
        lines = stdout.splitlines()[1:]
        files: list[str] = []
        for line in lines:
            if not line.strip():
                break
            files.append(line.strip())
        return files

    # ── Integration status ───────────────────────────────────

    async def get_ahead_commits(self, worktree_path: str, target_branch: str) -> list[CommitInfo]:
        out = await run_git(["log", "--format=%H%x09%s", f"{target_branch}..HEAD"], worktree_path)
        commits = []
        for line in out.splitlines():
            sha, _, message = line.partition("\t")
            if sha:
                commits.append(CommitInfo(hash=sha, message=message))
        return commits

    async def check_worktree_for_unmerged_work(
        self, base_dir: str, worktree_path: str, target_branch: str,
    ) -> UnmergedWork:
        return UnmergedWork(
            ahead_commits=await self.get_ahead_commits(worktree_path, target_branch),
            uncommitted_files=await self.get_uncommitted_files(worktree_path),
        )

    async def get_integration_status(
        self, base_dir: str, worktree_path: str, target_branch: str | None = None,
    ) -> WorktreeIntegrationStatus:
        """Read-only snapshot; recomputed on every call."""
        target = target_branch or await self.get_project_main_branch(base_dir)
        unmerged = await self.check_worktree_for_unmerged_work(base_dir, worktree_path, target)
        return WorktreeIntegrationStatus(
            target_branch=target,
            ahead_commits=unmerged.ahead_commits,
            uncommitted_files=unmerged.uncommitted_files,
            predicted_conflicts=await self.predict_conflicts(worktree_path, target),
            rebase_state=await self.get_rebase_state(worktree_path),
        )
