from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

from order.state.models import (
    LifecycleState,
    RunRecord,
    StageResult,
    is_allowed_transition,
    utcnow_iso,
)

RecordUpdater = Callable[[RunRecord], RunRecord | None]


class RunStateError(RuntimeError):
    """Raised when the run record cannot be read, written, or advanced."""


class RunStore:
    """Durable run record kept as a revisioned JSON envelope on disk.

    Every write goes to a temporary file in the same directory and is moved
    over the record with ``os.replace``, so readers only ever see a complete
    old or a complete new record.
    """

    SCHEMA_VERSION = 1

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def initialize(self) -> RunRecord:
        if self.exists():
            return self.read()
        record = RunRecord()
        self._write_envelope(record, revision=1)
        return record

    def _read_envelope(self) -> dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise RunStateError(f"Run record not found: {self.path}") from exc
        except OSError as exc:
            raise RunStateError(f"Run record unreadable: {self.path}: {exc}") from exc
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RunStateError(f"Run record is not valid JSON: {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise RunStateError(f"Run record must be a JSON object: {self.path}")
        if "schema_version" in payload and "data" in payload:
            return payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": payload,
        }

    @staticmethod
    def _decode(envelope: dict[str, Any]) -> RunRecord:
        data = envelope.get("data")
        if not isinstance(data, dict):
            raise RunStateError("Run record envelope carries no data object.")
        try:
            return RunRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise RunStateError(f"Run record is malformed: {exc}") from exc

    def _write_envelope(self, record: RunRecord, *, revision: int) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": record.updated_at,
            "data": record.to_dict(),
        }
        serialized = json.dumps(envelope, ensure_ascii=False, indent=2)
        temp_path: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                temp_path = handle.name
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self.path)
        except OSError as exc:
            if temp_path is not None:
                Path(temp_path).unlink(missing_ok=True)
            raise RunStateError(f"Failed to write run record {self.path}: {exc}") from exc

    @property
    def revision(self) -> int:
        return int(self._read_envelope().get("revision") or 1)

    def read(self) -> RunRecord:
        return self._decode(self._read_envelope())

    def update(self, updater: RecordUpdater) -> RunRecord:
        envelope = self._read_envelope()
        record = self._decode(envelope)
        updated = updater(record)
        if updated is None:
            updated = record
        updated.updated_at = utcnow_iso()
        self._write_envelope(updated, revision=int(envelope.get("revision") or 1) + 1)
        return updated

    def transition(
        self,
        target: LifecycleState,
        result: StageResult,
        mutate: RecordUpdater | None = None,
    ) -> RunRecord:
        def _apply(record: RunRecord) -> RunRecord:
            source = record.state
            if not is_allowed_transition(source, target):
                raise RunStateError(
                    f"Illegal transition {source.value} -> {target.value} "
                    f"(verdict {result.verdict.value})."
                )
            if mutate is not None:
                record = mutate(record) or record
            record.state = target
            record.last_result = result
            record.record_transition(source, target, result.verdict)
            return record

        return self.update(_apply)
