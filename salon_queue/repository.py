from __future__ import annotations

# Durable history of queue entries.
#
# The store writes every committed batch here *before* swapping it into
# memory and fanning it out (write-ahead). Two implementations:
# - MemoryEntryRepository: process-local, used by tests and demos.
# - JsonLinesEntryRepository: append-only `JsonLinesLog`; the latest record
#   for an entry id wins when the log is replayed on startup.
#
# `JsonLinesLog` is shared with the reputation ledger.

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import Any, TypeVar

from .errors import PersistenceError
from .models import QueueEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EntryRepository(ABC):
    @abstractmethod
    def save_many(self, entries: Iterable[QueueEntry]) -> None:
        """Persist a batch atomically. Raise PersistenceError on failure."""
        raise NotImplementedError

    @abstractmethod
    def load_all(self) -> list[QueueEntry]:
        """Return the latest persisted version of every entry."""
        raise NotImplementedError


class MemoryEntryRepository(EntryRepository):
    def __init__(self) -> None:
        self._entries: dict[str, QueueEntry] = {}
        self._lock = threading.Lock()

    def save_many(self, entries: Iterable[QueueEntry]) -> None:
        with self._lock:
            for e in entries:
                self._entries[e.id] = e

    def load_all(self) -> list[QueueEntry]:
        with self._lock:
            return list(self._entries.values())


class JsonLinesLog:
    """Append-only JSON lines file; each line is one committed batch.

    A crash can leave the last line unterminated. Before the next append the
    tail is terminated with a newline, so the torn record stays isolated on
    its own (skipped) line and never swallows the record written after it.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _needs_newline(self) -> bool:
        try:
            with open(self.path, "rb") as f:
                f.seek(0, os.SEEK_END)
                if f.tell() == 0:
                    return False
                f.seek(-1, os.SEEK_END)
                return f.read(1) != b"\n"
        except FileNotFoundError:
            return False

    def append(self, record: dict[str, Any]) -> None:
        line = json.dumps(record, separators=(",", ":")) + "\n"
        with self._lock:
            try:
                if self._needs_newline():
                    line = "\n" + line
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise PersistenceError(f"could not append to {self.path}: {e}") from e

    def records(self) -> Iterator[dict[str, Any]]:
        with self._lock:
            if not self.path.exists():
                return
            with open(self.path, "r", encoding="utf-8") as f:
                lines = list(f)
        for lineno, raw in enumerate(lines, start=1):
            raw = raw.strip()
            if not raw:
                continue
            try:
                record = json.loads(raw)
            except json.JSONDecodeError:
                # A torn write after a crash; the records around it are intact.
                logger.warning("Skipping unreadable log line %s in %s", lineno, self.path)
                continue
            if isinstance(record, dict):
                yield record


class JsonLinesEntryRepository(EntryRepository):
    def __init__(self, path: str | Path = "./data/queue_entries.jsonl") -> None:
        self._log = JsonLinesLog(path)

    def save_many(self, entries: Iterable[QueueEntry]) -> None:
        batch = [e.to_dict() for e in entries]
        if batch:
            self._log.append({"ts": time.time(), "entries": batch})

    def load_all(self) -> list[QueueEntry]:
        latest: dict[str, QueueEntry] = {}
        for record in self._log.records():
            for data in record.get("entries", []):
                entry = QueueEntry.from_dict(data)
                latest[entry.id] = entry
        return list(latest.values())



def retry_with_backoff(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 0.05,
    max_delay: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (PersistenceError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `fn`, retrying transient failures with exponential backoff.

    The last failure is re-raised once `attempts` are exhausted.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except retry_on as e:
            attempt += 1
            if attempt >= attempts:
                raise
            delay = min(max_delay, base_delay * 2 ** (attempt - 1))
            logger.warning("Transient failure, retry %s/%s in %.2fs: %s", attempt, attempts - 1, delay, e)
            sleep(delay)
