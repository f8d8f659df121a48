"""Persist the controller's status snapshot for external inspection."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Iterable

import anyio

from .models import McpChildProcess, McpStatusFile

logger = logging.getLogger(__name__)


def build_snapshot(
    processes: Iterable[McpChildProcess], relay_port: int
) -> McpStatusFile:
    return McpStatusFile(
        relay_port=relay_port,
        children=[process.to_status() for process in processes],
    )


class StatusPersister:
    """Write ``McpStatusFile`` snapshots to disk, never raising."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    async def write(self, snapshot: McpStatusFile) -> bool:
        text = json.dumps(snapshot.to_json_dict(), indent=2)
        target = anyio.Path(self.path)
        scratch = anyio.Path(self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp"))
        try:
            await target.parent.mkdir(parents=True, exist_ok=True)
            await scratch.write_text(text, encoding="utf-8")
            await scratch.replace(target)
        except OSError as exc:
            logger.warning("Failed to write status file %s: %s", self.path, exc)
            return False
        return True
