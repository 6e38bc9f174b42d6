"""
store.py — Record persistence.

`RecordStore` is the four-operation contract the pipeline needs
(create / find / find_all / update). Two implementations:

    InMemoryRecordStore  — dict behind a lock; tests and demo runs
    YamlRecordStore      — one YAML file per record type, rewritten atomically

The repositories on top give the processor its only query paths, in
particular the single due-report query `ScheduleRepository.find_due`.
"""

import copy
import dataclasses
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable

import yaml

from report_processor.errors import ValidationError
from report_processor.models import ReportTemplate, ScheduledReport

logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """Minimal persistence contract for one record type."""

    @abstractmethod
    def create(self, record):
        ...

    @abstractmethod
    def find(self, record_id: str):
        ...

    @abstractmethod
    def find_all(self, predicate: Callable[[Any], bool] | None = None) -> list:
        ...

    @abstractmethod
    def update(self, record_id: str, **changes):
        ...


class InMemoryRecordStore(RecordStore):
    """Thread-safe dict store. Returns copies so callers cannot mutate state."""

    def __init__(self, records: list | None = None):
        self._lock = threading.RLock()
        self._records: dict[str, Any] = {}
        for record in records or []:
            self.create(record)

    def create(self, record):
        with self._lock:
            if record.id in self._records:
                raise ValidationError(f"Duplicate record id: {record.id}")
            self._records[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def find(self, record_id: str):
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def find_all(self, predicate=None) -> list:
        with self._lock:
            return [copy.deepcopy(r) for r in self._records.values()
                    if predicate is None or predicate(r)]

    def update(self, record_id: str, **changes):
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise ValidationError(f"No record with id {record_id}")
            updated = dataclasses.replace(current, **changes)
            self._records[record_id] = updated
            return copy.deepcopy(updated)

    def __len__(self) -> int:
        return len(self._records)


def _to_plain(value: Any) -> Any:
    """YAML-safe copy: timestamps become ISO strings, tuples become lists."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    return value


class YamlRecordStore(InMemoryRecordStore):
    """In-memory store persisted to a YAML file after every write.

    Each write rewrites the whole file, which suits small deployments only.

    Args:
        path: File holding a list of record mappings.
        record_cls: Dataclass with `from_dict` / `to_dict`.
    """

    def __init__(self, path: str | Path, record_cls):
        self.path = Path(path)
        self.record_cls = record_cls
        super().__init__()
        if self.path.exists():
            with open(self.path, "r") as fh:
                raw = yaml.safe_load(fh) or []
            if not isinstance(raw, list):
                raise ValidationError(f"{self.path} must contain a list of records")
            for item in raw:
                record = record_cls.from_dict(item)
                self._records[record.id] = record
            logger.info("Loaded %d %s record(s) from %s",
                        len(self._records), record_cls.__name__, self.path)

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        data = [_to_plain(r.to_dict()) for r in self._records.values()]
        with open(tmp, "w") as fh:
            yaml.safe_dump(data, fh, sort_keys=False, allow_unicode=True)
        os.replace(tmp, self.path)

    def create(self, record):
        with self._lock:
            created = super().create(record)
            self._flush()
            return created

    def update(self, record_id: str, **changes):
        with self._lock:
            updated = super().update(record_id, **changes)
            self._flush()
            return updated


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

def load_templates(path: str | Path) -> list[ReportTemplate]:
    """Read template definitions from a YAML file (``templates:`` list)."""
    with open(path, "r") as fh:
        raw = yaml.safe_load(fh) or {}
    items = raw.get("templates", []) if isinstance(raw, dict) else raw
    return [ReportTemplate.from_dict(item) for item in items]


class TemplateRepository:
    def __init__(self, store: RecordStore):
        self.store = store

    def get(self, template_id: str) -> ReportTemplate | None:
        return self.store.find(template_id)

    def find_by_name(self, name: str) -> ReportTemplate | None:
        matches = self.store.find_all(lambda t: t.name == name)
        return matches[0] if matches else None

    def all(self) -> list[ReportTemplate]:
        return sorted(self.store.find_all(), key=lambda t: t.name)

    def add(self, template: ReportTemplate) -> ReportTemplate:
        return self.store.create(template)

    def seed_defaults(self, templates: list[ReportTemplate]) -> int:
        """Insert `templates` only when the store is empty."""
        if self.store.find_all():
            return 0
        for template in templates:
            self.store.create(template)
        logger.info("Seeded %d default template(s)", len(templates))
        return len(templates)


class ScheduleRepository:
    def __init__(self, store: RecordStore):
        self.store = store

    def get(self, report_id: str) -> ScheduledReport | None:
        return self.store.find(report_id)

    def add(self, report: ScheduledReport) -> ScheduledReport:
        return self.store.create(report)

    def all(self) -> list[ScheduledReport]:
        return self.store.find_all()

    def find_due(self, now: datetime) -> list[ScheduledReport]:
        """Active entries whose next run is at or before `now`, oldest first."""
        due = self.store.find_all(lambda r: r.is_due(now))
        return sorted(due, key=lambda r: r.next_run_date)

    def find_upcoming(self, now: datetime, limit: int = 5) -> list[ScheduledReport]:
        upcoming = self.store.find_all(
            lambda r: r.is_active and r.next_run_date is not None and r.next_run_date > now
        )
        return sorted(upcoming, key=lambda r: r.next_run_date)[:limit]

    def count_active(self) -> int:
        return len(self.store.find_all(lambda r: r.is_active))

    def record_run(self, report_id: str, ran_at: datetime, next_run: datetime) -> ScheduledReport:
        return self.store.update(report_id, last_run_date=ran_at, next_run_date=next_run)

    def skip_run(self, report_id: str, next_run: datetime) -> ScheduledReport:
        """Move `next_run_date` on without marking the entry as run."""
        return self.store.update(report_id, next_run_date=next_run)
