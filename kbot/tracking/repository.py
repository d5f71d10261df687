"""
Record Repository

Keyed collections of pydantic records with a guarded compare-and-set
update path. The JSON implementation rewrites its file atomically on every
mutation so the collection survives restarts.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

T = TypeVar("T", bound=BaseModel)

logger = logging.getLogger("kbot.tracking.repository")


class RecordRepository(ABC, Generic[T]):
    """Storage contract the tracking stores are written against."""

    @abstractmethod
    def get(self, key: str) -> Optional[T]:
        pass

    @abstractmethod
    def values(self) -> List[T]:
        pass

    @abstractmethod
    def insert(self, record: T) -> T:
        """Store a new record, replacing any record with the same key."""
        pass

    @abstractmethod
    def insert_if_absent(self, record: T) -> bool:
        """Store a record only if its key is unused. Returns True if stored."""
        pass

    @abstractmethod
    def compare_and_set(
        self,
        key: str,
        guard: Callable[[T], bool],
        mutate: Callable[[T], None],
    ) -> Optional[T]:
        """
        Atomically update one record.

        ``guard`` sees the current record; when it returns True, ``mutate`` is
        applied to a copy which then replaces the stored record.

        Returns:
            The updated record, or None if the key is unknown or the guard failed
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> Optional[T]:
        pass

    @abstractmethod
    def delete_where(self, predicate: Callable[[T], bool]) -> List[T]:
        pass

    def find(self, predicate: Callable[[T], bool]) -> List[T]:
        return [record for record in self.values() if predicate(record)]

    def count(self) -> int:
        return len(self.values())


class JsonRecordRepository(RecordRepository[T]):
    """
    Repository persisted as a JSON array in a single file.

    A missing file is created empty on load. An unreadable file is logged
    and treated as empty; it is overwritten on the next mutation.
    """

    def __init__(self, path: Path, model: Type[T], key_field: str = "id"):
        self._path = Path(path)
        self._model = model
        self._key_field = key_field
        self._lock = threading.RLock()
        self._records: Dict[str, T] = {}
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        """Load the collection from disk"""
        with self._lock:
            if not self._path.exists():
                self._records = {}
                self._write(self._records)
                logger.info("Initialized empty %s", self._path.name)
                return

            try:
                with open(self._path) as f:
                    data = json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                logger.warning("Failed to load %s: %s", self._path, e)
                self._records = {}
                return

            records: Dict[str, T] = {}
            for item in data if isinstance(data, list) else []:
                try:
                    record = self._model.model_validate(item)
                except ValidationError as e:
                    logger.warning("Dropping invalid record in %s: %s", self._path.name, e)
                    continue
                records[self._key(record)] = record
            self._records = records
            logger.debug("Loaded %d records from %s", len(records), self._path.name)

    def _key(self, record: T) -> str:
        return getattr(record, self._key_field)

    def _write(self, records: Dict[str, T]) -> None:
        """Atomically replace the backing file"""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = [record.model_dump(mode="json") for record in records.values()]

        fd, tmp_name = tempfile.mkstemp(
            dir=str(self._path.parent), prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _commit(self, records: Dict[str, T]) -> None:
        # Disk first so memory never runs ahead of the file
        self._write(records)
        self._records = records

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            record = self._records.get(key)
            return record.model_copy(deep=True) if record else None

    def values(self) -> List[T]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._records.values()]

    def insert(self, record: T) -> T:
        with self._lock:
            records = dict(self._records)
            records[self._key(record)] = record.model_copy(deep=True)
            self._commit(records)
            return record

    def insert_if_absent(self, record: T) -> bool:
        with self._lock:
            if self._key(record) in self._records:
                return False
            self.insert(record)
            return True

    def compare_and_set(
        self,
        key: str,
        guard: Callable[[T], bool],
        mutate: Callable[[T], None],
    ) -> Optional[T]:
        with self._lock:
            current = self._records.get(key)
            if current is None or not guard(current):
                return None

            updated = current.model_copy(deep=True)
            mutate(updated)

            records = dict(self._records)
            records[key] = updated
            self._commit(records)
            return updated.model_copy(deep=True)

    def delete(self, key: str) -> Optional[T]:
        with self._lock:
            if key not in self._records:
                return None
            records = dict(self._records)
            removed = records.pop(key)
            self._commit(records)
            return removed

    def delete_where(self, predicate: Callable[[T], bool]) -> List[T]:
        with self._lock:
            doomed = {k for k, r in self._records.items() if predicate(r)}
            if not doomed:
                return []
            removed = [self._records[k] for k in doomed]
            records = {k: r for k, r in self._records.items() if k not in doomed}
            self._commit(records)
            return removed
