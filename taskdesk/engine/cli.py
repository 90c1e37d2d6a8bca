"""CLI entry point for the task engine.

Usage:
    taskdesk serve
    taskdesk prompt "Add a --dry-run flag" --mode code
    taskdesk status --task 1f2e...
    taskdesk merge --task 1f2e... --squash
    taskdesk revert --task 1f2e...
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid
from pathlib import Path

from taskdesk.adapters.event_bus import EventBus
from taskdesk.adapters.events import LogMessage, ResponseChunk, event_to_dict

from .connector_server import ConnectorServer
from .errors import TaskDeskError
from .models import Mode
from .task_registry import TaskRegistry
from .yaml_config import TaskDeskConfig, load_yaml_config

logger = logging.getLogger(__name__)


def _load_config(path: str | None) -> TaskDeskConfig:
    if path:
        return load_yaml_config(path)
    default = Path.home() / ".taskdesk" / "config.yaml"
    if default.is_file():
        return load_yaml_config(default)
    return TaskDeskConfig.from_env()


async def _print_events(bus: EventBus) -> None:
    async for event in bus.consume():
        if isinstance(event, ResponseChunk):
            sys.stdout.write(event.chunk)
            sys.stdout.flush()
        elif isinstance(event, LogMessage) and event.message:
            print(f"[{event.level}] {event.message}", file=sys.stderr)
        else:
            logger.debug("event %s", json.dumps(event_to_dict(event), default=str))


async def _serve(registry: TaskRegistry) -> None:
    server = ConnectorServer(registry)
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()
        await registry.close_all()


async def _run(args: argparse.Namespace, config: TaskDeskConfig) -> int:
    bus = EventBus()
    config.engine.event_callback = bus.make_callback()
    registry = TaskRegistry(config)
    if args.command == "serve":
        await _serve(registry)
        return 0

    base_dir = str(Path(args.base_dir).resolve())
    task = registry.get_or_create(base_dir, args.task or str(uuid.uuid4()))
    printer = asyncio.create_task(_print_events(bus))
    server: ConnectorServer | None = None
    try:
        if args.command == "prompt":
            server = ConnectorServer(registry)
            await server.start()
            responses = await task.run_prompt(args.text, Mode(args.mode))
            print()
            print(f"=== {len(responses)} response(s) for task {task.id} ===")
        elif args.command == "status":
            status = await task.get_integration_status(args.target)
            print(json.dumps(status.to_dict() if status else None, indent=2))
        elif args.command == "merge":
            await task.merge_to_main(args.squash, args.target, args.message)
        elif args.command == "revert":
            await task.revert_last_merge()
        return 0
    finally:
        await registry.close_all()
        if server is not None:
            await server.stop()
        bus.close()
        await printer


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="taskdesk",
        description="Task coordinator for AI-assisted coding sessions",
    )
    parser.add_argument("--config", "-c", default=None, help="YAML config file")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the connector server until interrupted")

    def task_parser(name: str, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--base-dir", default=os.getcwd(), help="Project directory (default: cwd)")
        p.add_argument("--task", default=None, help="Task id (default: a new task)")
        return p

    prompt = task_parser("prompt", "Run one prompt and print the responses")
    prompt.add_argument("text", help="Prompt text")
    prompt.add_argument(
        "--mode",
        default=Mode.CODE.value,
        choices=[m.value for m in Mode],
        help="Prompt mode (default: code)",
    )

    status = task_parser("status", "Print the worktree integration status")
    status.add_argument("--target", default=None, help="Target branch")

    merge = task_parser("merge", "Merge the task worktree into the target branch")
    merge.add_argument("--squash", action="store_true", help="Squash into a single commit")
    merge.add_argument("--target", default=None, help="Target branch")
    merge.add_argument("--message", "-m", default=None, help="Commit message for --squash")

    task_parser("revert", "Revert the task's last merge")

    args = parser.parse_args()

    config = _load_config(args.config)
    level = logging.DEBUG if args.verbose else getattr(logging, config.engine.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        sys.exit(asyncio.run(_run(args, config)))
    except TaskDeskError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(1)


if __name__ == "__main__":
    main()
