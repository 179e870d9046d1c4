"""
Leak Ledger

Tracks provisioned workspaces that have not (yet) been destroyed.

An entry is written as soon as a workspace exists and removed once destroy
succeeds. Whatever remains after a run (destroy failures, interrupted
scenarios, a killed process) is the list for out-of-band reconciliation.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from provisioning.terraform import ProvisionedResourceHandle

logger = logging.getLogger(__name__)


class LeakStatus(str, Enum):
    IN_FLIGHT = "in_flight"    # Provisioning or validating; destroy still pending
    LEAKED = "leaked"          # Destroy ran and failed
    ABANDONED = "abandoned"    # Interrupted before destroy could complete


@dataclass
class LeakEntry:
    """One possibly-live resource set."""
    identity: str
    scenario_name: str
    resource_group_name: str
    resource_name: str
    workspace: str
    status: LeakStatus = LeakStatus.IN_FLIGHT
    recorded_at: str = field(default_factory=lambda: datetime.now().isoformat())
    reason: str = ""


class LeakLedger:
    """
    JSON-file registry of undestroyed resources.

    Usage:
        ledger = LeakLedger(Path("/tmp/apim-acceptance/leaks.json"))
        ledger.record(handle)
        ...
        ledger.resolve(handle)
        leftovers = ledger.pending()

    With path=None the ledger is kept in memory only. Runs may share one
    file: every write re-reads it and keeps the entries other runs own.
    """

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self.entries: dict[str, LeakEntry] = {}
        # Identities this process recorded; everything else belongs to the file
        self._owned: set[str] = set()
        self._load()

    def _read(self) -> dict[str, LeakEntry]:
        if self.path is None or not self.path.exists():
            return {}
        entries = {}
        try:
            data = json.loads(self.path.read_text())
            for item in data.get("entries", []):
                item["status"] = LeakStatus(item["status"])
                entry = LeakEntry(**item)
                entries[entry.identity] = entry
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning(f"Failed to load leak ledger {self.path}: {e}")
        return entries

    def _load(self):
        self.entries.update(self._read())

    def _merge(self):
        """Pick up entries other runs sharing the file added or resolved."""
        on_disk = self._read()
        for identity in list(self.entries):
            if identity not in self._owned and identity not in on_disk:
                del self.entries[identity]
        for identity, entry in on_disk.items():
            if identity not in self._owned:
                self.entries[identity] = entry

    def _save(self):
        if self.path is None:
            return
        self._merge()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "updated_at": datetime.now().isoformat(),
            "entries": [
                {**asdict(e), "status": e.status.value} for e in self.entries.values()
            ],
        }
        tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(payload, indent=2))
        tmp.replace(self.path)

    def record(self, handle: ProvisionedResourceHandle) -> None:
        """Register a freshly prepared workspace."""
        with self._lock:
            self._owned.add(handle.identity)
            self.entries[handle.identity] = LeakEntry(
                identity=handle.identity,
                scenario_name=handle.scenario_name,
                resource_group_name=handle.resource_group_name,
                resource_name=handle.resource_name,
                workspace=str(handle.workspace),
            )
            self._save()

    def mark(self, handle: ProvisionedResourceHandle, status: LeakStatus, reason: str = "") -> None:
        """Flag a workspace as leaked or abandoned."""
        with self._lock:
            self._owned.add(handle.identity)
            entry = self.entries.get(handle.identity)
            if entry is None:
                entry = LeakEntry(
                    identity=handle.identity,
                    scenario_name=handle.scenario_name,
                    resource_group_name=handle.resource_group_name,
                    resource_name=handle.resource_name,
                    workspace=str(handle.workspace),
                )
                self.entries[handle.identity] = entry
            entry.status = status
            entry.reason = reason
            entry.recorded_at = datetime.now().isoformat()
            self._save()

    def resolve(self, handle: ProvisionedResourceHandle) -> None:
        """Forget a workspace whose resources were destroyed."""
        with self._lock:
            self._owned.add(handle.identity)
            if self.entries.pop(handle.identity, None) is not None:
                self._save()

    def pending(self) -> list[LeakEntry]:
        """Entries that still need attention."""
        with self._lock:
            return list(self.entries.values())
