"""
InstanceRecord schema - persisted metadata for one launched instance.

An InstanceRecord is written right after the merged compose file and
removed together with it by teardown. The name is generated at launch and
never changes.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

INSTANCE_PREFIX = "coral"


def _now() -> datetime:
    """Current local time, timezone-aware, to the second (as persisted)."""
    return datetime.now(timezone.utc).astimezone().replace(microsecond=0)


def generate_instance_name() -> str:
    """Generate a unique instance name (coral-<nanoseconds since epoch>)."""
    return f"{INSTANCE_PREFIX}-{time.time_ns()}"


@dataclass(frozen=True)
class InstanceRecord:
    """
    Metadata for one instance.

    Attributes:
        name: Generated instance name (also the compose project name)
        compose_file: Path to the merged compose file
        lib_path: Shared artifact library root
        created_at: Creation time (serialized as RFC3339)
        handle: Optional user-supplied handle
        group: Optional group label
        detached: Whether the instance was launched detached
    """
    name: str
    compose_file: str
    lib_path: str
    created_at: datetime = field(default_factory=_now)
    handle: Optional[str] = None
    group: Optional[str] = None
    detached: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result = {
            "name": self.name,
            "compose_file": self.compose_file,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "lib_path": self.lib_path,
        }
        if self.handle:
            result["handle"] = self.handle
        if self.group:
            result["group"] = self.group
        result["detached"] = self.detached
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InstanceRecord":
        """
        Deserialize from dictionary.

        Raises:
            KeyError: If a required field is missing
            ValueError: If created_at is not an RFC3339 timestamp with a UTC offset
        """
        created_at = data["created_at"]
        if created_at.endswith("Z"):
            created_at = created_at[:-1] + "+00:00"
        timestamp = datetime.fromisoformat(created_at)
        if timestamp.tzinfo is None:
            raise ValueError(f"created_at has no UTC offset: {data['created_at']!r}")
        return cls(
            name=data["name"],
            compose_file=data["compose_file"],
            lib_path=data["lib_path"],
            created_at=timestamp,
            handle=data.get("handle") or None,
            group=data.get("group") or None,
            detached=bool(data.get("detached", False)),
        )
