"""Durable state records for stack-based orchestration.

Records the last-applied configuration and provider outputs of every
resource so that planning can diff against them and references can be
resolved from them. The state file is rewritten after every individual
change, so an interrupted run leaves state matching exactly the operations
that finished.

Layout of .states/{stack}/state.json:

    {
      "version": 1,
      "stack": "hub",
      "serial": 7,
      "resources": {"network.net1": {...ResourceRecord...}}
    }
"""

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from errors import StateConflictError
from stack import resolve_references

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass
class ResourceRecord:
    """Last-known state of one applied resource.

    Attributes:
        type: Resource type
        name: Resource name
        provider: Provider instance that manages it
        configuration: Declared configuration (references unresolved)
        inputs: Resolved configuration last sent to the provider
        outputs: Attributes returned by the provider
        dependencies: Addresses it depended on when applied
        created_at: Timestamp of first successful create
        updated_at: Timestamp of last successful create/update
        tainted: Applied but never became ready; replanned as an update
    """
    type: str
    name: str
    provider: str
    configuration: dict = field(default_factory=dict)
    inputs: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    created_at: Optional[float] = None
    updated_at: Optional[float] = None
    tainted: bool = False

    @property
    def address(self) -> str:
        return f'{self.type}.{self.name}'

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'type': self.type,
            'name': self.name,
            'provider': self.provider,
            'configuration': self.configuration,
            'inputs': self.inputs,
            'outputs': self.outputs,
            'dependencies': list(self.dependencies),
        }
        if self.created_at is not None:
            d['created_at'] = self.created_at
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        if self.tainted:
            d['tainted'] = True
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceRecord':
        return cls(
            type=data['type'],
            name=data['name'],
            provider=data.get('provider', ''),
            configuration=data.get('configuration', {}),
            inputs=data.get('inputs', {}),
            outputs=data.get('outputs', {}),
            dependencies=list(data.get('dependencies', [])),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at'),
            tainted=bool(data.get('tainted', False)),
        )


class StateStore:
    """File-backed store of ResourceRecords with a monotonic serial.

    The store is the only object shared between concurrently running
    operations; every mutation is serialized by a lock and persisted
    immediately. Before each write the on-disk serial is compared with the
    serial this store last saw, so a concurrent run against the same state
    file raises StateConflictError instead of silently overwriting it.
    """

    def __init__(self, path: Path, stack_name: str):
        """Initialize an empty store bound to a state file.

        Args:
            path: State file location
            stack_name: Stack identifier stored in the file
        """
        self.path = Path(path)
        self.stack_name = stack_name
        self._records: dict[str, ResourceRecord] = {}
        self._serial = 0
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: Path, stack_name: str) -> 'StateStore':
        """Load a store from disk; a missing file yields an empty store at serial 0."""
        store = cls(path, stack_name)
        if not store.path.exists():
            logger.debug(f"No state at {store.path}, starting empty")
            return store

        data = store._read()
        if data.get('stack') not in (None, stack_name):
            logger.warning(f"State file {store.path} belongs to stack "
                           f"'{data.get('stack')}', not '{stack_name}'")
        store._serial = int(data.get('serial', 0))
        for address, rec in data.get('resources', {}).items():
            store._records[address] = ResourceRecord.from_dict(rec)
        logger.debug(f"Loaded state from {store.path} "
                     f"(serial {store._serial}, {len(store._records)} resources)")
        return store

    def _read(self) -> dict:
        with open(self.path, encoding='utf-8') as f:
            return json.load(f)

    @property
    def serial(self) -> int:
        return self._serial

    @property
    def records(self) -> dict[str, ResourceRecord]:
        with self._lock:
            return dict(self._records)

    def get(self, address: str) -> Optional[ResourceRecord]:
        with self._lock:
            return self._records.get(address)

    def outputs_for(self, address: str) -> Optional[dict]:
        """Current outputs of a resource, or None if it has no record."""
        with self._lock:
            record = self._records.get(address)
            return dict(record.outputs) if record is not None else None

    def resolve(self, value: Any, source: str = '') -> Any:
        """Substitute references in value with current recorded outputs.

        Raises:
            UnresolvedReferenceError: If a referenced output is not recorded
        """
        return resolve_references(value, self.outputs_for, source)

    def disk_serial(self) -> int:
        """Serial currently persisted on disk (0 when no file exists)."""
        if not self.path.exists():
            return 0
        return int(self._read().get('serial', 0))

    def check_serial(self, expected: int) -> None:
        """Verify nobody changed the state since `expected` was observed.

        Raises:
            StateConflictError: If the on-disk serial differs
        """
        actual = self.disk_serial()
        if actual != expected:
            raise StateConflictError(expected, actual)

    def record(self, record: ResourceRecord) -> None:
        """Insert or replace a record and persist immediately."""
        with self._lock:
            self.check_serial(self._serial)
            prior = self._records.get(record.address)
            now = time.time()
            if record.created_at is None:
                record.created_at = prior.created_at if prior and prior.created_at else now
            record.updated_at = now
            self._records[record.address] = record
            self._serial += 1
            self._write()
        logger.debug(f"Recorded {record.address} (serial {self._serial})")

    def remove(self, address: str) -> None:
        """Drop a record and persist immediately. Unknown addresses are ignored."""
        with self._lock:
            if address not in self._records:
                return
            self.check_serial(self._serial)
            del self._records[address]
            self._serial += 1
            self._write()
        logger.debug(f"Removed {address} (serial {self._serial})")

    def to_dict(self) -> dict:
        return {
            'version': STATE_VERSION,
            'stack': self.stack_name,
            'serial': self._serial,
            'resources': {a: r.to_dict() for a, r in sorted(self._records.items())},
        }

    def _write(self) -> None:
        """Atomically replace the state file (caller holds the lock)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix='.state-', suffix='.json', dir=self.path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
