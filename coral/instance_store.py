"""
InstanceStore - persist InstanceRecords as one JSON file per instance.

Layout:
    <coral home>/instances/
        {instance_name}.json

No file locking: a single writer per instance name is assumed. Distinct
instances never collide because names are unique per launch.
"""

import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional

from coral.config import get_instances_dir
from coral.schemas import InstanceRecord

logger = logging.getLogger(__name__)


class InstanceStore:
    """File-based store for InstanceRecords."""

    def __init__(self, store_dir: Optional[Path | str] = None):
        self._store_dir = Path(store_dir) if store_dir is not None else get_instances_dir()

    @property
    def store_dir(self) -> Path:
        return self._store_dir

    def path_for(self, name: str) -> Path:
        return self._store_dir / f"{name}.json"

    def write(self, record: InstanceRecord) -> Path:
        """Write (or overwrite) the record file for record.name."""
        self._store_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(record.name)
        with open(path, "w") as f:
            json.dump(record.to_dict(), f, indent=2)
        return path

    def read_by_name(self, name: str) -> Optional[InstanceRecord]:
        """
        Load one record.

        Returns:
            The record, or None if the file is missing or malformed
        """
        return self._read(self.path_for(name))

    def read_all(self) -> List[InstanceRecord]:
        """Load every record, oldest first; unrelated or malformed files are skipped."""
        if not self._store_dir.exists():
            return []

        records = []
        for path in sorted(self._store_dir.glob("*.json")):
            record = self._read(path)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.created_at)
        return records

    def find(
        self,
        names: Iterable[str] = (),
        handles: Iterable[str] = (),
        groups: Iterable[str] = (),
    ) -> List[InstanceRecord]:
        """Records matching any of the given names, handles, or groups."""
        names, handles, groups = set(names), set(handles), set(groups)
        return [
            r for r in self.read_all()
            if r.name in names
            or (r.handle is not None and r.handle in handles)
            or (r.group is not None and r.group in groups)
        ]

    def delete(self, name: str) -> bool:
        """Remove a record file; a missing file is not an error."""
        try:
            self.path_for(name).unlink()
            return True
        except FileNotFoundError:
            return False

    def _read(self, path: Path) -> Optional[InstanceRecord]:
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Skipping unreadable instance file {path}: {e}")
            return None

        if not isinstance(data, dict):
            logger.debug(f"Skipping instance file {path}: not a JSON object")
            return None

        try:
            return InstanceRecord.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.debug(f"Skipping malformed instance file {path}: {e}")
            return None
