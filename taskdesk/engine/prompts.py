"""Prompt templates for commit-message generation and conflict resolution."""
from __future__ import annotations

from .models import AgentProfile, ConflictContext

COMMIT_MESSAGE_SYSTEM_PROMPT = """\
You write git commit messages in the Conventional Commits format.
Use an imperative subject line of at most 72 characters, prefixed with
a type such as feat, fix, refactor, docs, test or chore. Add a short
body only when the subject alone cannot describe the change.
"""

CONFLICT_RESOLUTION_SYSTEM_PROMPT = """\
You are resolving a git merge conflict in exactly one file.
Edit only that file. Remove every conflict marker (<<<<<<<, =======,
>>>>>>>) and produce a version that keeps the intent of both sides.
Do not run git commands, do not stage files and do not touch any other
file. When done, reply with a one-line summary of the resolution.
"""

CONFLICT_RESOLUTION_PROFILE = AgentProfile(
    id="conflict-resolution",
    name="Conflict resolution",
    system_prompt=CONFLICT_RESOLUTION_SYSTEM_PROMPT,
    allowed_tools=["Read", "Edit", "Write"],
    permission_mode="acceptEdits",
    max_turns=30,
)


def commit_message_request(diff: str) -> str:
    return (
        "Generate a concise conventional commit message for these changes:\n\n"
        f"{diff}\n\n"
        "Only answer with the commit message, nothing else."
    )


def conflict_resolution_prompt(
    ctx: ConflictContext,
    *,
    base_path: str | None = None,
    ours_path: str | None = None,
    theirs_path: str | None = None,
) -> str:
    lines = [
        f"Resolve the merge conflict in `{ctx.file_path}`.",
        "",
        "The working copy contains conflict markers. Reference versions:",
    ]
    if base_path:
        lines.append(f"- common ancestor (base): `{base_path}`")
    if ours_path:
        lines.append(f"- branch being rebased onto (ours): `{ours_path}`")
    if theirs_path:
        lines.append(f"- change being applied (theirs): `{theirs_path}`")
    if not (base_path or ours_path or theirs_path):
        lines.append("- none available; resolve from the markers alone")
    lines += [
        "",
        f"Write the resolved content back to `{ctx.file_path}`.",
    ]
    return "\n".join(lines)
