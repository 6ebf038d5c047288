"""
Merge a service definition with an extracted interface fragment.

Rules, applied per key of the overlay:
- key only in overlay: copied in
- sequence + sequence: concatenated, overlay after base (no deduplication)
- mapping + mapping: merged recursively
- anything else: overlay replaces base

Volumes are normalized after the merge so that relative host paths
introduced by a fragment become absolute as well.
"""

import copy
import os
from pathlib import Path
from typing import Any, Optional

from coral.schemas.value import ServiceDefinition, ValueKind, kind_of


def merge(base: ServiceDefinition, overlay: ServiceDefinition) -> ServiceDefinition:
    """
    Deep-merge overlay into a copy of base.

    Neither argument is modified.
    """
    merged = copy.deepcopy(base)
    for key, overlay_value in overlay.items():
        if key not in merged:
            merged[key] = copy.deepcopy(overlay_value)
            continue
        merged[key] = merge_values(merged[key], overlay_value)
    return merged


def merge_values(base_value: Any, overlay_value: Any) -> Any:
    """Merge two values present under the same key."""
    base_kind = kind_of(base_value)
    overlay_kind = kind_of(overlay_value)

    if base_kind is ValueKind.SEQUENCE and overlay_kind is ValueKind.SEQUENCE:
        return list(base_value) + copy.deepcopy(list(overlay_value))
    if base_kind is ValueKind.MAPPING and overlay_kind is ValueKind.MAPPING:
        return merge(base_value, overlay_value)
    return copy.deepcopy(overlay_value)


def is_variable_reference(host_path: str) -> bool:
    """True for unresolved ${VAR} / $VAR host paths."""
    return host_path.startswith("$")


def normalize_volume(volume: Any, base_dir: Path) -> Any:
    """
    Absolutize the host side of a "host:container[:mode]" volume string.

    Long-syntax (mapping) volumes, absolute paths, and variable references
    are returned unchanged.
    """
    if kind_of(volume) is not ValueKind.STRING:
        return volume

    parts = volume.split(":", 1)
    if len(parts) != 2:
        return volume

    host_path, rest = parts
    if not host_path or os.path.isabs(host_path) or is_variable_reference(host_path):
        return volume

    absolute = os.path.normpath(os.path.join(str(base_dir), host_path))
    return f"{absolute}:{rest}"


def normalize_volumes(service: ServiceDefinition, base_dir: Optional[Path] = None) -> ServiceDefinition:
    """Rewrite relative volume host paths in place against base_dir (default: cwd)."""
    volumes = service.get("volumes")
    if kind_of(volumes) is not ValueKind.SEQUENCE:
        return service

    base_dir = base_dir if base_dir is not None else Path.cwd()
    service["volumes"] = [normalize_volume(v, base_dir) for v in volumes]
    return service


def merge_service(
    base: ServiceDefinition,
    fragment: Optional[ServiceDefinition],
    base_dir: Optional[Path] = None,
) -> ServiceDefinition:
    """Merge a fragment (if any) into a service, then normalize its volumes."""
    merged = merge(base, fragment) if fragment else copy.deepcopy(base)
    return normalize_volumes(merged, base_dir)
