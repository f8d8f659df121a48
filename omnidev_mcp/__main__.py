"""Command line entry point: ``python -m omnidev_mcp serve|status``."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from .config import STATUS_FILE, project_root
from .server import McpRuntime, configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="omnidev-mcp", description="Supervise the MCP servers declared by capabilities."
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="spawn capability MCPs and run the relay")
    serve.add_argument("--root", type=Path, default=None, help="project root")
    serve.add_argument(
        "--port", type=int, default=None, help="relay port (0 picks a free port)"
    )
    serve.add_argument(
        "--no-watch", action="store_true", help="do not reload on configuration changes"
    )
    serve.add_argument(
        "--no-stdio",
        action="store_true",
        help="do not serve omni_sandbox_environment over stdin/stdout",
    )

    status = commands.add_parser("status", help="print the last written status file")
    status.add_argument("--root", type=Path, default=None, help="project root")
    return parser


def _print_status(root: Path) -> int:
    path = root / STATUS_FILE
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        print(f"No status file at {path}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as exc:
        print(f"Failed to read {path}: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(data, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    root = (args.root or project_root()).resolve()

    if args.command == "status":
        return _print_status(root)

    configure_logging(root)
    runtime = McpRuntime(
        root, relay_port=args.port, watch=not args.no_watch, stdio=not args.no_stdio
    )
    asyncio.run(runtime.run_forever())
    return 0


if __name__ == "__main__":
    sys.exit(main())
