"""
Compose values - the kinds of data a compose document can hold.

Compose documents stay plain YAML data (dict / list / scalars) so they
round-trip through PyYAML untouched. ValueKind makes the per-kind decisions
of the merge explicit: every value is classified once, and the merge
dispatches on the pair of kinds.
"""

from enum import Enum
from typing import Any, Dict, List, Union

# A service definition: string keys to heterogeneous values
ServiceDefinition = Dict[str, Any]
ComposeValue = Union[str, int, float, bool, None, List[Any], Dict[str, Any]]


class ValueKind(str, Enum):
    """Tag for a compose value."""

    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    NULL = "null"
    SEQUENCE = "sequence"
    MAPPING = "mapping"

    @property
    def is_scalar(self) -> bool:
        return self not in (ValueKind.SEQUENCE, ValueKind.MAPPING)


def kind_of(value: Any) -> ValueKind:
    """
    Classify a value loaded from YAML.

    bool is checked before number because bool is a subclass of int.

    Raises:
        TypeError: For objects YAML safe_load never produces
    """
    if value is None:
        return ValueKind.NULL
    if isinstance(value, bool):
        return ValueKind.BOOL
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple)):
        return ValueKind.SEQUENCE
    if isinstance(value, dict):
        return ValueKind.MAPPING
    raise TypeError(f"unsupported compose value type: {type(value).__name__}")
