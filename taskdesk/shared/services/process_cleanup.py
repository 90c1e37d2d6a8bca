"""Process-tree helpers for the subprocess backend.

Killing only the direct child would orphan whatever it spawned
(language servers, shells), so kills walk the whole tree.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def _list_processes_proc() -> dict[int, ProcessInfo]:
    """Fallback process table from /proc when `ps` is unavailable."""
    table: dict[int, ProcessInfo] = {}
    for entry in Path("/proc").iterdir():
        if not entry.name.isdigit():
            continue
        try:
            stat = (entry / "stat").read_text()
            cmdline = (entry / "cmdline").read_bytes().replace(b"\0", b" ").decode(
                errors="replace"
            ).strip()
        except OSError:
            continue
        # Field 2 (comm) may contain spaces; ppid is the 2nd field after ')'.
        rest = stat.rsplit(")", 1)[-1].split()
        if len(rest) < 2:
            continue
        pid = int(entry.name)
        table[pid] = ProcessInfo(pid=pid, ppid=int(rest[1]), args=cmdline)
    return table


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    try:
        out = subprocess.check_output(
            ["ps", "-eo", "pid=,ppid=,args="],
            text=True,
            stderr=subprocess.DEVNULL,
        )
    except (OSError, subprocess.CalledProcessError):
        return _list_processes_proc()
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split(maxsplit=2)
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2] if len(parts) > 2 else "")
    return table


def collect_descendants(root_pid: int, table: dict[int, ProcessInfo]) -> list[int]:
    """Return descendant PIDs of *root_pid*, deepest first."""
    children: dict[int, list[int]] = {}
    for proc in table.values():
        children.setdefault(proc.ppid, []).append(proc.pid)

    ordered: list[int] = []
    stack = [root_pid]
    seen = {root_pid}
    while stack:
        pid = stack.pop()
        for child in children.get(pid, []):
            if child in seen:
                continue
            seen.add(child)
            ordered.append(child)
            stack.append(child)
    ordered.reverse()
    return ordered


def pid_alive(pid: int) -> bool:
    """True when a process with *pid* exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    return True


def kill_process_tree(pid: int, sig: int = signal.SIGKILL) -> int:
    """Signal *pid* and all of its descendants, children first.

    Processes that are already gone count as success. Returns the
    number of processes signalled. Other OS errors propagate.
    """
    try:
        table = _list_processes()
    except OSError as exc:
        logger.debug("process table unavailable (%s), killing pid %d only", exc, pid)
        table = {}

    killed = 0
    for target in [*collect_descendants(pid, table), pid]:
        try:
            os.kill(target, sig)
            killed += 1
        except ProcessLookupError:
            continue
    logger.debug("kill_process_tree: pid=%d signal=%d killed=%d", pid, sig, killed)
    return killed
