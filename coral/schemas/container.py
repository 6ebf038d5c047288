"""ContainerInfo - a running container as seen by the log multiplexer."""

import re
from dataclasses import dataclass

_REPLICA_SUFFIX = re.compile(r"-\d+$")


@dataclass(frozen=True)
class ContainerInfo:
    """Container id, full name, and the service it belongs to."""

    id: str
    name: str
    service: str

    @classmethod
    def from_name(cls, container_id: str, full_name: str, instance_name: str) -> "ContainerInfo":
        """
        Derive the service label from a container name.

        "coral-123-camera-2" in instance "coral-123" -> service "camera".
        """
        full_name = full_name.strip().strip("/")
        service = full_name
        prefix = f"{instance_name}-"
        if service.startswith(prefix):
            service = service[len(prefix):]
        service = _REPLICA_SUFFIX.sub("", service)
        return cls(id=container_id, name=full_name, service=service)
