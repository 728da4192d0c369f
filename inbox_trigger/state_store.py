"""Atomic JSON persistence for the browser session state."""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()


class StateStore:
    """Read and atomically replace a JSON state file.

    Writes go to a temp file in the same directory, are re-read to
    verify, then renamed over the target.  A missing, unreadable or
    corrupt file loads as ``None``.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any] | None:
        try:
            with self._path.open(encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("state_file_unreadable", path=str(self._path), error=str(exc))
            return None

        if not isinstance(data, dict):
            logger.warning("state_file_invalid", path=str(self._path), type=type(data).__name__)
            return None
        return data

    def save(self, state: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self._path.parent,
            prefix=f".{self._path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(state, fh)
                fh.flush()
                os.fsync(fh.fileno())
            with open(tmp_path, encoding="utf-8") as fh:
                json.load(fh)
            os.replace(tmp_path, self._path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise
        logger.debug("state_file_saved", path=str(self._path))
