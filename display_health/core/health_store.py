from __future__ import annotations

"""
Authoritative per-device health state with serialized writes.

Every mutation goes through ``HealthStateStore.commit``. Reads return the last
committed immutable record and never block on writers.
"""

from dataclasses import replace
from datetime import datetime, timezone
import json
from pathlib import Path
import threading
import time
from typing import Any, Callable, Mapping, Optional

from loguru import logger

from .exceptions import DeviceNotMonitoredError, PersistenceError, StaleWriteError
from .records import DeviceHealthRecord

SCHEMA_VERSION = 1

Mutation = Callable[[DeviceHealthRecord], DeviceHealthRecord]


def _utc_now_iso() -> str:
    """
    Return the current UTC timestamp in ISO-8601 format.

    Returns
    -------
    str
        UTC timestamp string.
    """
    return datetime.now(timezone.utc).isoformat()


def _now_ms() -> float:
    return time.time() * 1000.0


def _atomic_write_json(path: Path, payload: dict) -> None:
    """
    Write JSON atomically to avoid partial reads.

    Parameters
    ----------
    path : Path
        Output file path.
    payload : dict
        JSON payload.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp.replace(path)


class HealthStateStore:
    """
    Versioned record store with one serialized writer per device.

    Parameters
    ----------
    record_factory : Callable[[str], DeviceHealthRecord] | None, optional
        Builds the default record for a newly observed device.
    clock : Callable[[], float] | None, optional
        Epoch-millisecond clock used by the default factory.
    max_commit_retries : int, optional
        Attempts made when the optimistic version fence trips, by default 3.
    """

    def __init__(
        self,
        *,
        record_factory: Optional[Callable[[str], DeviceHealthRecord]] = None,
        clock: Optional[Callable[[], float]] = None,
        max_commit_retries: int = 3,
    ) -> None:
        self._clock = clock or _now_ms
        self._record_factory = record_factory or (
            lambda device_id: DeviceHealthRecord.initial(device_id, now_ms=self._clock())
        )
        self._max_commit_retries = max(1, int(max_commit_retries))
        self._registry_lock = threading.RLock()
        self._device_locks: dict[str, threading.Lock] = {}
        self._records: dict[str, DeviceHealthRecord] = {}
        self._archived: dict[str, DeviceHealthRecord] = {}

    def get(self, device_id: str) -> Optional[DeviceHealthRecord]:
        return self._records.get(device_id)

    def all_records(self) -> dict[str, DeviceHealthRecord]:
        with self._registry_lock:
            return dict(self._records)

    def device_ids(self) -> tuple[str, ...]:
        with self._registry_lock:
            return tuple(sorted(self._records))

    def ensure(self, device_id: str) -> DeviceHealthRecord:
        """
        Return the device's record, creating a default one on first observation.
        """
        with self._registry_lock:
            record = self._records.get(device_id)
            if record is None:
                record = self._record_factory(device_id)
                self._records[device_id] = record
                self._archived.pop(device_id, None)
            return record

    def commit(self, device_id: str, mutation: Mutation) -> tuple[DeviceHealthRecord, DeviceHealthRecord]:
        """
        Apply ``mutation`` to a device record under that device's write lock.

        The mutation receives the current record and returns the replacement
        (or the same object for no change). The store stamps the new version;
        a mutation that returns any version other than the one it read, or
        the one after it, is a stale write and is rejected.

        Parameters
        ----------
        device_id : str
            Device identifier.
        mutation : Callable[[DeviceHealthRecord], DeviceHealthRecord]
            Pure function deriving the next record.

        Returns
        -------
        tuple[DeviceHealthRecord, DeviceHealthRecord]
            ``(before, after)`` records. Both are the same object when the
            mutation made no change.

        Raises
        ------
        StaleWriteError
            If the write cannot be fenced against a fresh version.
        DeviceNotMonitoredError
            If the device was archived; only ``ensure`` brings it back.
        """
        with self._device_lock(device_id):
            for attempt in range(1, self._max_commit_retries + 1):
                with self._registry_lock:
                    if device_id not in self._records and device_id in self._archived:
                        raise DeviceNotMonitoredError(f"Device {device_id} was removed; write refused.")
                current = self.ensure(device_id)
                candidate = mutation(current)
                if candidate is None or candidate is current:
                    return current, current
                if candidate.device_id != device_id:
                    raise StaleWriteError(
                        f"Mutation for {device_id} returned a record for {candidate.device_id}."
                    )
                if candidate.version not in (current.version, current.version + 1):
                    logger.error(
                        "Stale write rejected for {}: read version {}, mutation produced {}",
                        device_id,
                        current.version,
                        candidate.version,
                    )
                    raise StaleWriteError(
                        f"Write for {device_id} must advance version {current.version} by exactly 1."
                    )
                committed = replace(candidate, version=current.version + 1)
                with self._registry_lock:
                    if self._records.get(device_id) is current:
                        self._records[device_id] = committed
                        return current, committed
                logger.warning(
                    "Version fence tripped for {} (attempt {}/{}); retrying against fresh record.",
                    device_id,
                    attempt,
                    self._max_commit_retries,
                )
        logger.error(
            "Stale write for {} after {} attempts; record left at its last committed state.",
            device_id,
            self._max_commit_retries,
        )
        raise StaleWriteError(f"Could not commit mutation for {device_id}: concurrent replacement.")

    def archive(self, device_id: str) -> Optional[DeviceHealthRecord]:
        """
        Move a device's record out of the live set.

        Returns
        -------
        DeviceHealthRecord | None
            Archived record, or None when the device is unknown.
        """
        with self._device_lock(device_id):
            with self._registry_lock:
                record = self._records.pop(device_id, None)
                if record is not None:
                    self._archived[device_id] = record
        return record

    def archived(self, device_id: str) -> Optional[DeviceHealthRecord]:
        with self._registry_lock:
            return self._archived.get(device_id)

    def snapshot(self) -> dict:
        """
        Serialize all live records into one versioned payload.

        Returns
        -------
        dict
            JSON-compatible snapshot.
        """
        records = self.all_records()
        return {
            "schema_version": SCHEMA_VERSION,
            "saved_at": _utc_now_iso(),
            "devices": {device_id: records[device_id].to_dict() for device_id in sorted(records)},
        }

    def restore(self, data: Any) -> int:
        """
        Replace live records with a snapshot.

        Corrupt device entries are replaced individually by default records.

        Parameters
        ----------
        data : Any
            Payload produced by ``snapshot``.

        Returns
        -------
        int
            Number of device entries restored intact.
        """
        if not isinstance(data, Mapping) or not isinstance(data.get("devices"), Mapping):
            logger.warning("Health state snapshot is unreadable; nothing restored.")
            return 0
        schema = data.get("schema_version")
        if not isinstance(schema, int) or isinstance(schema, bool) or schema > SCHEMA_VERSION:
            logger.warning(
                "Health state snapshot has unsupported schema version {!r}; nothing restored.",
                schema,
            )
            return 0

        loaded: dict[str, DeviceHealthRecord] = {}
        intact = 0
        for device_id, payload in data["devices"].items():
            device_id = str(device_id)
            try:
                record = DeviceHealthRecord.from_dict(payload)
                if record.device_id != device_id:
                    raise ValueError(f"entry key {device_id!r} holds record for {record.device_id!r}")
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(
                    "Corrupt health record for {} replaced with defaults: {}",
                    device_id,
                    exc,
                )
                record = self._record_factory(device_id)
            else:
                intact += 1
            loaded[device_id] = record

        with self._registry_lock:
            self._records.update(loaded)
        logger.info("Restored {} of {} device health records.", intact, len(loaded))
        return intact

    def save(self, path: str | Path) -> None:
        """
        Persist a snapshot to ``path``.

        Raises
        ------
        PersistenceError
            If the file cannot be written.
        """
        try:
            _atomic_write_json(Path(path), self.snapshot())
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Could not write health state to {path}: {exc}") from exc

    def load(self, path: str | Path) -> int:
        """
        Restore records from a snapshot file.

        Returns
        -------
        int
            Number of device entries restored intact; 0 when the file is
            missing or unreadable.
        """
        state_path = Path(path)
        if not state_path.exists():
            return 0
        try:
            payload = json.loads(state_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Health state file {} is unreadable: {}", state_path, exc)
            return 0
        return self.restore(payload)

    def _device_lock(self, device_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._device_locks.get(device_id)
            if lock is None:
                lock = threading.Lock()
                self._device_locks[device_id] = lock
            return lock
