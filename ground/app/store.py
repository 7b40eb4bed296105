import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ground.app.schemas import (
    IngestResult,
    TelemetryIn,
    TelemetrySnapshot,
    placeholder_snapshot,
    resolve_snapshot,
)

LOG = logging.getLogger("ground.store")

QUERY_CAP = 100


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TelemetryStore:
    """
    Append-only telemetry log plus the one-shot manual override flag.

    The flag is read and cleared under the same lock as the append, so when two
    ingests overlap exactly one of them carries force_pump=True.
    Optionally mirrors every record to a JSON-lines file and reloads it on start.
    """

    def __init__(self, log_path: Optional[Path] = None):
        self._lock = threading.Lock()
        self._log: List[TelemetrySnapshot] = []
        self._force_pump = False
        self.log_path = Path(log_path) if log_path else None
        if self.log_path is not None:
            self._load()

    def _load(self) -> None:
        if not self.log_path.is_file():
            return
        loaded = 0
        with self.log_path.open("r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    self._log.append(TelemetrySnapshot.model_validate_json(line))
                    loaded += 1
                except ValidationError as e:
                    LOG.warning("Skipping corrupt record at %s:%d: %s", self.log_path, lineno, e)
        LOG.info("Loaded %d telemetry records from %s", loaded, self.log_path)

    def _persist(self, snapshot: TelemetrySnapshot) -> None:
        if self.log_path is None:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as fh:
                fh.write(snapshot.model_dump_json() + "\n")
        except OSError as e:
            LOG.error("Failed to persist telemetry record to %s: %s", self.log_path, e)

    def __len__(self) -> int:
        with self._lock:
            return len(self._log)

    @property
    def pending_force_pump(self) -> bool:
        with self._lock:
            return self._force_pump

    def request_force_pump(self) -> None:
        """Arm the manual override; delivered with the next successful ingest."""
        with self._lock:
            self._force_pump = True
        LOG.info("Manual irrigation override armed")

    def ingest(self, raw: Dict[str, Any]) -> IngestResult:
        """
        Store a (possibly partial) snapshot and hand back the pending directive.
        Raises pydantic.ValidationError for wrongly typed members.
        """
        payload = TelemetryIn.model_validate(raw)
        snapshot = resolve_snapshot(payload, now_iso())
        with self._lock:
            self._log.append(snapshot)
            self._persist(snapshot)
            force, self._force_pump = self._force_pump, False
            stored = len(self._log)
        if force:
            LOG.info("Delivered irrigation override to %s", snapshot.node_id)
        LOG.debug("Ingested record from %s (%d stored)", snapshot.node_id, stored)
        return IngestResult(status="success", force_pump=force)

    def query(self, limit: int = QUERY_CAP) -> List[TelemetrySnapshot]:
        """Most recent records first, at most ``limit`` (capped at QUERY_CAP)."""
        if limit < 1:
            raise ValueError("limit must be >= 1")
        limit = min(limit, QUERY_CAP)
        with self._lock:
            records = self._log[-limit:]
        if not records:
            return [placeholder_snapshot(now_iso())]
        return list(reversed(records))
