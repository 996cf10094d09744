"""Step output artifacts and the per-run progress file."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from workforge.persistence.base import validate_run_id

_log = logging.getLogger(__name__)

OUTPUTS_DIR = "step-outputs"
PROGRESS_FILE = "progress.md"
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(name: str, fallback: str = "output.md") -> str:
    """Reduce ``name`` to a single safe path segment."""
    cleaned = _UNSAFE.sub("_", Path(str(name)).name).strip("._")
    return cleaned or fallback


def render_content(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, indent=2, default=str)


class ArtifactStore:
    """Writes under ``<base_dir>/<run_id>/``; keeps everything in memory when
    ``base_dir`` is None. Writes overwrite, so re-running a step is safe.
    """

    def __init__(self, base_dir: Optional[Union[str, Path]] = None, max_progress_bytes: int = 10 * 1024 * 1024):
        self.base_dir = Path(base_dir) if base_dir is not None else None
        self.max_progress_bytes = max_progress_bytes
        self._memory: dict[str, dict[str, str]] = {}
        self._progress: dict[str, str] = {}
        self._lock = threading.Lock()

    def output_path(self, run_id: str, filename: str) -> str:
        safe = sanitize_filename(filename)
        if self.base_dir is None:
            return f"memory://{run_id}/{OUTPUTS_DIR}/{safe}"
        return str(self.base_dir / validate_run_id(run_id) / OUTPUTS_DIR / safe)

    # ------------------------------------------------------------------
    def _write(self, run_id: str, filename: str, content: str) -> str:
        path = self.output_path(run_id, filename)
        if self.base_dir is None:
            with self._lock:
                self._memory.setdefault(run_id, {})[Path(path).name] = content
            return path
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return path

    def _read_progress(self, run_id: str) -> str:
        if self.base_dir is None:
            return self._progress.get(run_id, "")
        path = self.base_dir / validate_run_id(run_id) / PROGRESS_FILE
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")

    def _append_progress(self, run_id: str, entry: str) -> bool:
        with self._lock:
            if self.base_dir is None:
                current = self._progress.get(run_id, "")
                if len(current.encode("utf-8")) >= self.max_progress_bytes:
                    return False
                self._progress[run_id] = current + entry
                return True
            path = self.base_dir / validate_run_id(run_id) / PROGRESS_FILE
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.exists() and path.stat().st_size >= self.max_progress_bytes:
                return False
            with path.open("a", encoding="utf-8") as f:
                f.write(entry)
            return True

    # ------------------------------------------------------------------
    async def write_output(self, run_id: str, filename: str, output: Any) -> str:
        path = await asyncio.to_thread(self._write, run_id, filename, render_content(output))
        _log.debug("Step output saved", extra={"run_id": run_id, "output_path": path})
        return path

    def read_output(self, run_id: str, filename: str) -> str | None:
        if self.base_dir is None:
            return self._memory.get(run_id, {}).get(sanitize_filename(filename))
        path = Path(self.output_path(run_id, filename))
        return path.read_text(encoding="utf-8") if path.exists() else None

    async def read_progress(self, run_id: str) -> str:
        return await asyncio.to_thread(self._read_progress, run_id)

    async def append_progress(self, run_id: str, step_id: str, output: Any) -> None:
        timestamp = datetime.now(timezone.utc).isoformat()
        entry = f"## Step: {step_id} ({timestamp})\n\n{render_content(output)}\n\n---\n\n"
        appended = await asyncio.to_thread(self._append_progress, run_id, entry)
        if not appended:
            _log.warning(
                "Progress file exceeds %d bytes; skipping append", self.max_progress_bytes,
                extra={"run_id": run_id, "step_id": step_id},
            )
