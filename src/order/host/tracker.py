from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any


class TrackerError(RuntimeError):
    """Raised when the issue tracker cannot answer a lookup."""


class BeadsTracker:
    """Read-only lookups against the Beads (``bd``) issue tracker."""

    REF_KEYS = ("external_ref", "externalRef", "external_id")

    def __init__(
        self, repo_root: Path, *, binary: str = "bd", timeout_seconds: float = 30.0
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    def _show(self, task_id: str) -> Any:
        command = [self.binary, "show", task_id, "--json"]
        try:
            proc = subprocess.run(
                command,
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            raise TrackerError(f"bd lookup failed for {task_id}: {exc}") from exc
        if proc.returncode != 0:
            raise TrackerError(proc.stderr.strip() or f"bd show {task_id} failed")
        try:
            return json.loads(proc.stdout or "null")
        except json.JSONDecodeError as exc:
            raise TrackerError(f"bd returned invalid JSON for {task_id}") from exc

    def external_ref(self, task_id: str) -> str | None:
        payload = self._show(task_id)
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if not isinstance(payload, dict):
            return None
        for key in self.REF_KEYS:
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None
