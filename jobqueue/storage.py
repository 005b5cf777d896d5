"""Durable snapshot stores for the scheduler."""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from .errors import StoreError
from .models import Snapshot


class Store(ABC):
    """Persistence boundary for the waiting queue and terminal history."""

    @abstractmethod
    def load(self) -> Optional[Snapshot]:
        """Return the last saved snapshot, or None if nothing was saved."""

    @abstractmethod
    def save(self, snapshot: Snapshot) -> None:
        """Replace the saved snapshot."""


class NullStore(Store):
    """Keeps nothing."""

    def load(self) -> Optional[Snapshot]:
        return None

    def save(self, snapshot: Snapshot) -> None:
        pass


class MemoryStore(Store):
    """Holds the snapshot as JSON-compatible data, for tests and embedding."""

    def __init__(self):
        self.data: Optional[Dict[str, Any]] = None
        self.saves = 0

    def load(self) -> Optional[Snapshot]:
        if self.data is None:
            return None
        return Snapshot.model_validate(self.data)

    def save(self, snapshot: Snapshot) -> None:
        try:
            self.data = snapshot.model_dump(mode="json")
        except (TypeError, ValueError) as e:
            raise StoreError(f"Cannot serialize snapshot: {e}") from e
        self.saves += 1


class JsonFileStore(Store):
    """File-based snapshot store with atomic writes.

    Layout under ``data_dir``: ``<name>.json`` holds the snapshot,
    ``config.json`` holds settings overrides written by the CLI.
    """

    def __init__(self, data_dir: Union[str, Path] = ".jobqueue", name: str = "jobqueue"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.snapshot_file = self.data_dir / f"{name}.json"
        self.config_file = self.data_dir / "config.json"

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2)
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Any:
        with open(file_path, "r") as f:
            return json.load(f)

    def load(self) -> Optional[Snapshot]:
        if not self.snapshot_file.exists():
            return None
        try:
            return Snapshot.model_validate(self._read_json(self.snapshot_file))
        except (OSError, ValueError, ValidationError) as e:
            raise StoreError(f"Cannot read {self.snapshot_file}: {e}") from e

    def save(self, snapshot: Snapshot) -> None:
        try:
            self._write_json(self.snapshot_file, snapshot.model_dump(mode="json"))
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Cannot write {self.snapshot_file}: {e}") from e

    def get_config(self) -> Dict[str, Any]:
        """Get saved settings overrides."""
        if not self.config_file.exists():
            return {}
        return self._read_json(self.config_file)

    def set_config(self, overrides: Dict[str, Any]) -> None:
        """Replace saved settings overrides."""
        self._write_json(self.config_file, overrides)
