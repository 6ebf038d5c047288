"""Compose document handling: loading, merging, and profile classification."""

from .merger import merge, merge_service, normalize_volumes
from .parser import load_compose, load_fragment, load_raw_yaml, save_raw_yaml, validate_compose
from .profiles import PHASE_ORDER, Profile, ProfileIndex, build_profile_index, ordered_phases

__all__ = [
    "merge",
    "merge_service",
    "normalize_volumes",
    "load_compose",
    "load_fragment",
    "load_raw_yaml",
    "save_raw_yaml",
    "validate_compose",
    "PHASE_ORDER",
    "Profile",
    "ProfileIndex",
    "build_profile_index",
    "ordered_phases",
]
