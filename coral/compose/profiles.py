"""
Profile index: which services launch in which phase.

Services carry compose "profiles" tags. Only drivers, skillsets, and
executors are launchable; a service with none of them is skipped with a
warning. The phase order handed to the launcher is always the fixed
precedence below, never the iteration order of the index.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)


class Profile(str, Enum):
    """Launch phases, in precedence order."""

    DRIVERS = "drivers"
    SKILLSETS = "skillsets"
    EXECUTORS = "executors"


PHASE_ORDER: List[str] = [p.value for p in Profile]


def service_profiles(service: Dict[str, Any]) -> List[str]:
    """Return the string profile tags of a service (non-strings ignored)."""
    raw = service.get("profiles")
    if not isinstance(raw, list):
        return []
    return [p for p in raw if isinstance(p, str)]


def ordered_phases(profiles: Iterable[str]) -> List[str]:
    """Filter profiles to valid phases in fixed precedence, without duplicates."""
    present = set(profiles)
    return [p for p in PHASE_ORDER if p in present]


@dataclass
class ProfileIndex:
    """
    Result of classifying a compose file's services.

    Attributes:
        services: Selected service names (allow-listed and launchable)
        phases: profile -> service names, valid profiles only
        skipped: Services dropped because no tag is a valid profile
        excluded: Services dropped by the profile allow-list
    """
    services: List[str] = field(default_factory=list)
    phases: Dict[str, List[str]] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)

    def ordered_phases(self) -> List[str]:
        """Non-empty phases in precedence order."""
        return [p for p in PHASE_ORDER if self.phases.get(p)]

    def services_for(self, profile: str) -> List[str]:
        return list(self.phases.get(profile, []))


def build_profile_index(
    services: Dict[str, Dict[str, Any]],
    allow_list: Optional[Sequence[str]] = None,
) -> ProfileIndex:
    """
    Classify services by profile.

    Args:
        services: Compose services mapping (name -> definition)
        allow_list: Profiles to launch; empty or None means all

    Returns:
        ProfileIndex; services outside the allow-list are excluded from
        the index entirely, not just from phasing
    """
    allowed = set(allow_list or [])
    index = ProfileIndex()

    for name, service in services.items():
        tags = service_profiles(service)

        if allowed and not allowed.intersection(tags):
            index.excluded.append(name)
            logger.debug(f"Excluding service {name}: profiles {tags} not in {sorted(allowed)}")
            continue

        valid = ordered_phases(tags)
        if not valid:
            index.skipped.append(name)
            logger.warning(
                f"Skipping service {name} as it does not match any valid profiles {PHASE_ORDER}",
                extra={"event": "service_skipped", "metadata": {"service": name, "profiles": tags}},
            )
            continue

        index.services.append(name)
        for profile in valid:
            if allowed and profile not in allowed:
                continue
            index.phases.setdefault(profile, []).append(name)

    return index
