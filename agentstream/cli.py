"""CLI entry point for the augmentation server and transcript replay.

Usage:
    agentstream serve --port 8765 --config agentstream.yaml
    agentstream replay session.jsonl --provider codex
    agentstream replay session.jsonl --json > events.jsonl
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.table import Table

from .augments import AugmentConfig, ConfigError, StreamAugmenter
from .augments.config import load_yaml_config
from .augments.models import (
    AugmentedEvent,
    ControlEvent,
    PendingEvent,
    ProviderFamily,
    StreamEvent,
    event_to_dict,
)
from .providers import ReplaySource

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Root logger on stderr, plus a rotating file when ``log_file`` is set."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(_LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def load_config(path: str | None) -> AugmentConfig:
    if path:
        return load_yaml_config(path)
    return AugmentConfig.from_env()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentstream",
        description="Stream AI coding-agent output with highlighted, diffed augments",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP/SSE/WebSocket server")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8765, help="Port (default: 8765, 0 = any)")
    serve.add_argument("--config", default=None, help="YAML file with an augments: section")
    serve.add_argument("--cwd", default=None, help="Working directory for agents (default: current dir)")
    serve.add_argument("--record-dir", default=None, help="Append completed blocks as JSONL here")
    serve.add_argument("--log-file", default=None, help="Also log to this rotating file")
    serve.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    replay = sub.add_parser("replay", help="Run a recorded transcript through the pipeline")
    replay.add_argument("transcript", help="JSONL transcript of raw provider messages")
    replay.add_argument(
        "--provider",
        default=None,
        choices=[family.value for family in ProviderFamily],
        help="Provider family of the transcript (default: detect per line)",
    )
    replay.add_argument("--delay", type=float, default=0.0, help="Seconds between lines")
    replay.add_argument("--config", default=None, help="YAML file with an augments: section")
    replay.add_argument("--json", action="store_true", help="Print events as JSON lines")
    replay.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def _summary(event: StreamEvent) -> tuple[str, str, str]:
    if isinstance(event, PendingEvent):
        return event.block_id, "", event.delta_text
    if isinstance(event, AugmentedEvent):
        block = event.block
        if block.tool_call is not None:
            detail = block.tool_call.name or "<unknown tool>"
        else:
            detail = block.raw_content
        augment = event.augment.kind if event.augment is not None else "-"
        if block.degraded:
            augment += " (degraded)"
        return event.block_id, augment, detail
    if isinstance(event, ControlEvent):
        return "", "", event.detail or ""
    return "", "", ""


async def _replay(args: argparse.Namespace, config: AugmentConfig) -> int:
    family = ProviderFamily(args.provider) if args.provider else None
    source = ReplaySource(args.transcript, delay=args.delay, family=family)
    augmenter = StreamAugmenter(
        f"replay-{Path(args.transcript).stem}", config=config, family=family,
    )
    console = Console()
    table = Table(title=args.transcript, show_lines=False)
    table.add_column("event", style="cyan", no_wrap=True)
    table.add_column("block", style="magenta")
    table.add_column("augment", style="green")
    table.add_column("detail", overflow="fold")

    status = 0
    async for event in augmenter.stream(source.messages("")):
        if isinstance(event, ControlEvent) and event.event_name == "error":
            status = 1
        if args.json:
            print(json.dumps(event_to_dict(event), ensure_ascii=False))
            continue
        block_id, augment, detail = _summary(event)
        if len(detail) > 120:
            detail = detail[:117] + "..."
        table.add_row(event.event_name, block_id, augment, detail)
    if not args.json:
        console.print(table)
    return status


async def _serve(args: argparse.Namespace, config: AugmentConfig) -> None:
    from .server import AugmentServer

    server = AugmentServer(
        host=args.host,
        port=args.port,
        cwd=args.cwd,
        config=config,
        record_dir=args.record_dir,
    )
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except (ConfigError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)

    level = "DEBUG" if args.verbose else config.log_level
    configure_logging(level, getattr(args, "log_file", None))
    logger = logging.getLogger(__name__)

    if args.command == "serve":
        logger.info(
            "Starting agentstream server cwd=%s port=%s config=%s log=%s",
            args.cwd or Path.cwd(), args.port, args.config or "<none>",
            args.log_file or "<stderr>",
        )
        try:
            asyncio.run(_serve(args, config))
        except KeyboardInterrupt:
            print("\nInterrupted.")
        return

    if not Path(args.transcript).is_file():
        print(f"Error: Transcript not found: {args.transcript}", file=sys.stderr)
        sys.exit(1)
    try:
        status = asyncio.run(_replay(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(1)
    sys.exit(status)


if __name__ == "__main__":
    main()
