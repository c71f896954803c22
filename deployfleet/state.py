"""Durable record of what deployfleet has created."""

import json
import os
import threading
import uuid
from pathlib import Path

from .errors import ValidationError
from .types import ResourceEntry, StateData, StateOutputs

STATE_VERSION = 1


def _empty_state() -> StateData:
    return {
        "version": STATE_VERSION,
        "lineage": uuid.uuid4().hex,
        "resources": {},
        "outputs": {},
        "orphans": [],
    }


class ProvisionedState:
    """Mapping of logical resource name to cloud id and spec hash.

    All mutations go through a single lock and are written to disk before
    the lock is released, so concurrent completions never lose an update
    and a crash leaves the last complete write in place.
    """

    def __init__(self, path: str | Path, data: StateData | None = None):
        self.path = Path(path)
        self.data: StateData = data or _empty_state()
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: str | Path) -> "ProvisionedState":
        """Load state from path, or start an empty one if the file is absent."""
        path = Path(path)
        if not path.exists():
            return cls(path)
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ValidationError(f"State file '{path}' is not valid JSON: {e}")
        if data.get("version") != STATE_VERSION:
            raise ValidationError(
                f"State file '{path}' has unsupported version {data.get('version')!r}"
            )
        data.setdefault("outputs", {})
        data.setdefault("orphans", [])
        return cls(path, data)

    def _save(self) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(self.data, indent=2))
        os.replace(tmp_path, self.path)

    def save(self) -> None:
        with self._lock:
            self._save()

    @property
    def lineage(self) -> str:
        return self.data["lineage"]

    @property
    def resources(self) -> dict[str, ResourceEntry]:
        return self.data["resources"]

    @property
    def outputs(self) -> StateOutputs:
        return self.data["outputs"]

    @property
    def orphans(self) -> list[str]:
        return self.data["orphans"]

    def get(self, name: str) -> ResourceEntry | None:
        return self.resources.get(name)

    def record(self, name: str, entry: ResourceEntry) -> None:
        """Store entry under name; a replaced instance id is kept as an orphan."""
        with self._lock:
            previous = self.resources.get(name)
            if (
                previous
                and previous.get("kind") == "instance"
                and previous.get("id") != entry.get("id")
            ):
                self.orphans.append(previous["id"])
            self.resources[name] = entry
            self._save()

    def remove(self, name: str) -> None:
        with self._lock:
            self.resources.pop(name, None)
            self._save()

    def clear_orphans(self, instance_ids: list[str]) -> None:
        with self._lock:
            self.data["orphans"] = [i for i in self.orphans if i not in instance_ids]
            self._save()

    def set_outputs(self, **outputs) -> None:
        with self._lock:
            self.outputs.update(outputs)
            self._save()

    def reset_if_empty(self) -> None:
        """Start a new lineage once nothing is tracked any more."""
        with self._lock:
            if not self.resources and not self.orphans:
                self.data = _empty_state()
                self._save()

    def instances(self, role: str | None = None) -> dict[str, ResourceEntry]:
        return {
            name: entry
            for name, entry in self.resources.items()
            if entry.get("kind") == "instance" and (role is None or entry.get("role") == role)
        }
