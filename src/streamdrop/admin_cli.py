"""CLI entry point for streamdrop-admin: sweep and session inspection tool."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from streamdrop.chunks import ChunkStore
from streamdrop.config import StreamDropConfig, load_config
from streamdrop.metadata import SessionState, create_session_store
from streamdrop.server import create_storage_backend
from streamdrop.sweeper import UploadSweeper


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="streamdrop-admin",
        description="StreamDrop upload maintenance tool",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sweep_parser = subparsers.add_parser(
        "sweep", help="Expire stale sessions and delete leftover parts"
    )
    sweep_parser.add_argument(
        "--config", type=Path, default=Path("streamdrop.yaml"),
        help="Config file path (default: streamdrop.yaml)",
    )

    sessions_parser = subparsers.add_parser("sessions", help="List upload sessions as JSON")
    sessions_parser.add_argument(
        "--config", type=Path, default=Path("streamdrop.yaml"),
        help="Config file path (default: streamdrop.yaml)",
    )
    sessions_parser.add_argument(
        "--state", choices=[s.value for s in SessionState], default=None,
        help="Only list sessions in this state",
    )
    sessions_parser.add_argument(
        "--limit", type=int, default=1000,
        help="Maximum number of sessions to list (default: 1000)",
    )

    return parser.parse_args(argv)


async def run_sweep(config: StreamDropConfig) -> dict[str, int]:
    """Open both stores, run one sweep, and close them again."""
    store = create_session_store(config.metadata)
    storage = create_storage_backend(config)
    await store.init_db()
    await storage.init()
    try:
        sweeper = UploadSweeper(
            store, ChunkStore(storage, config.uploads.chunk_prefix), config.uploads
        )
        report = await sweeper.sweep()
        return report.to_dict()
    finally:
        await storage.close()
        await store.close()


async def list_sessions(
    config: StreamDropConfig, state: str | None = None, limit: int = 1000
) -> list[dict]:
    store = create_session_store(config.metadata)
    await store.init_db()
    try:
        sessions = await store.list_sessions(
            SessionState(state) if state else None, limit=limit
        )
        return [s.to_dict() for s in sessions]
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        print(f"Error: config file not found: {args.config}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error reading config: {e}", file=sys.stderr)
        return 1

    if args.command == "sweep":
        try:
            report = asyncio.run(run_sweep(config))
        except Exception as e:
            print(f"Error sweeping: {e}", file=sys.stderr)
            return 1
        for name, count in report.items():
            print(f"  {name}: {count}", file=sys.stderr)

    elif args.command == "sessions":
        try:
            sessions = asyncio.run(list_sessions(config, args.state, args.limit))
        except Exception as e:
            print(f"Error listing sessions: {e}", file=sys.stderr)
            return 1
        print(json.dumps(sessions, indent=2))

    return 0


def entry_point() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    entry_point()
