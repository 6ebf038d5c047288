"""
coral.schemas - Data structures for the instance lifecycle.

InstanceRecord: persisted per instance (one JSON file each)
ContainerInfo: derived at tail time, never persisted
ValueKind: classification of compose document values
"""

from .container import ContainerInfo
from .instance import InstanceRecord, generate_instance_name
from .value import ComposeValue, ServiceDefinition, ValueKind, kind_of

__all__ = [
    "ContainerInfo",
    "InstanceRecord",
    "generate_instance_name",
    "ComposeValue",
    "ServiceDefinition",
    "ValueKind",
    "kind_of",
]
