"""Instance registry: bounded, lock-protected allocation of infrastructure slots."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional
import fcntl
import json
import os
import threading

import structlog
from pydantic import BaseModel, TypeAdapter

from .commands import pid_alive
from .config import InfrastructureConfig, InstancePorts, calculate_ports
from .errors import InfrastructureError, NoInstanceAvailableError

LOGGER = structlog.get_logger("agentqa.registry")


class InstanceRecord(BaseModel):
    id: int
    ports: InstancePorts
    owner_pid: int
    started_at: datetime


_RECORDS = TypeAdapter(list[InstanceRecord])


class RegistryStore(ABC):
    """Durable key-value storage for instance records."""

    @abstractmethod
    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold an exclusive lock across a read-modify-write cycle."""

    @abstractmethod
    def load(self) -> dict[int, InstanceRecord]: ...

    @abstractmethod
    def save(self, records: dict[int, InstanceRecord]) -> None: ...


class FileRegistryStore(RegistryStore):
    """JSON file guarded by an ``flock`` on a sibling lock file.

    The lock is held across processes, so two test runs racing for a slot
    never claim the same id.
    """

    def __init__(self, path: Path, lock_path: Optional[Path] = None) -> None:
        self.path = path
        self.lock_path = lock_path or path.with_suffix(".lock")
        self._thread_lock = threading.Lock()

    @contextmanager
    def lock(self) -> Iterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        with self._thread_lock, self.lock_path.open("w") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def load(self) -> dict[int, InstanceRecord]:
        if not self.path.exists():
            return {}
        text = self.path.read_text(encoding="utf-8").strip()
        if not text:
            return {}
        try:
            records = _RECORDS.validate_python(json.loads(text).get("instances", []))
        except (ValueError, AttributeError) as exc:
            raise InfrastructureError(f"Registry file {self.path} is corrupt: {exc}") from exc
        return {record.id: record for record in records}

    def save(self, records: dict[int, InstanceRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"instances": [records[key].model_dump(mode="json") for key in sorted(records)]}
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)


class MemoryRegistryStore(RegistryStore):
    def __init__(self) -> None:
        self._records: dict[int, InstanceRecord] = {}
        self._lock = threading.RLock()

    @contextmanager
    def lock(self) -> Iterator[None]:
        with self._lock:
            yield

    def load(self) -> dict[int, InstanceRecord]:
        return dict(self._records)

    def save(self, records: dict[int, InstanceRecord]) -> None:
        self._records = dict(records)


class InstanceRegistry:
    """Allocates up to ``max_instances`` slots, each with its own port set."""

    def __init__(
        self,
        config: Optional[InfrastructureConfig] = None,
        store: Optional[RegistryStore] = None,
        *,
        is_alive: Callable[[int], bool] = pid_alive,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.config = config or InfrastructureConfig()
        self.store = store or FileRegistryStore(self.config.registry_file, self.config.lock_file)
        self._is_alive = is_alive
        self._now = now

    def is_stale(self, record: InstanceRecord) -> bool:
        if not self._is_alive(record.owner_pid):
            return True
        age = (self._now() - record.started_at).total_seconds()
        return age > self.config.stale_instance_timeout

    def list_instances(self) -> list[InstanceRecord]:
        with self.store.lock():
            records = self.store.load()
        return [records[key] for key in sorted(records)]

    def get(self, instance_id: int) -> Optional[InstanceRecord]:
        with self.store.lock():
            return self.store.load().get(instance_id)

    def get_available_count(self) -> int:
        active = [record for record in self.list_instances() if not self.is_stale(record)]
        return max(0, self.config.max_instances - len(active))

    def acquire(self, owner_pid: Optional[int] = None) -> InstanceRecord:
        """Claim the lowest free slot, reclaiming stale ones first."""

        with self.store.lock():
            records = self.store.load()
            for record in [item for item in records.values() if self.is_stale(item)]:
                del records[record.id]
                LOGGER.info("instance_reclaimed", instance_id=record.id, owner_pid=record.owner_pid)
            free = [index for index in range(self.config.max_instances) if index not in records]
            if not free:
                raise NoInstanceAvailableError(
                    f"All {self.config.max_instances} instances are in use"
                )
            record = InstanceRecord(
                id=free[0],
                ports=calculate_ports(free[0], self.config),
                owner_pid=owner_pid if owner_pid is not None else os.getpid(),
                started_at=self._now(),
            )
            records[record.id] = record
            self.store.save(records)
        LOGGER.info("instance_acquired", instance_id=record.id, ports=record.ports.values())
        return record

    def release(self, instance_id: int) -> bool:
        with self.store.lock():
            records = self.store.load()
            removed = records.pop(instance_id, None)
            if removed is not None:
                self.store.save(records)
        if removed is not None:
            LOGGER.info("instance_released", instance_id=instance_id)
        return removed is not None

    def clean_stale(self) -> list[InstanceRecord]:
        """Drop stale records from the bookkeeping. OS resources are left alone."""

        with self.store.lock():
            records = self.store.load()
            stale = [records[key] for key in sorted(records) if self.is_stale(records[key])]
            for record in stale:
                del records[record.id]
            if stale:
                self.store.save(records)
        for record in stale:
            LOGGER.info("instance_stale_removed", instance_id=record.id, owner_pid=record.owner_pid)
        return stale

    def clear(self) -> int:
        with self.store.lock():
            count = len(self.store.load())
            if count:
                self.store.save({})
        return count
