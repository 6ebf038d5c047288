"""
Compose document loading and saving.

Compose files are read as text, ${VAR} / $VAR references are expanded from
the environment mapping, and the result is parsed with PyYAML. Unknown
variables are left in place so compose itself can report them.
"""

import re
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from coral.errors import ConfigError, ExtractionError

RawCompose = Dict[str, Any]

_BRACED_VAR = re.compile(r"\$\{([^}]+)\}")
_BARE_VAR = re.compile(r"\$(\w+)")


def expand_env(text: str, env: Mapping[str, str]) -> str:
    """Expand ${VAR} and $VAR references that exist in env."""

    def _replace(match: re.Match) -> str:
        return env.get(match.group(1), match.group(0))

    text = _BRACED_VAR.sub(_replace, text)
    return _BARE_VAR.sub(_replace, text)


def validate_compose(doc: Any, source: str) -> Dict[str, Dict[str, Any]]:
    """
    Check the parts of a compose document coral relies on.

    Returns:
        The services mapping

    Raises:
        ConfigError: If 'services' is missing/empty or a service has no image
    """
    if not isinstance(doc, dict):
        raise ConfigError(f"{source}: compose document must be a mapping")

    services = doc.get("services")
    if not isinstance(services, dict) or not services:
        raise ConfigError(f"{source}: compose file does not contain a 'services' section")

    for name, service in services.items():
        if not isinstance(service, dict):
            raise ConfigError(f"{source}: service {name!r} must be a mapping")
        image = service.get("image")
        if not isinstance(image, str) or not image.strip():
            raise ConfigError(f"{source}: service {name!r} has no 'image'")

    return services


def load_compose(path: Path, env: Mapping[str, str]) -> RawCompose:
    """
    Load and validate the user's compose file.

    Raises:
        ConfigError: On unreadable files, invalid YAML, or missing fields
    """
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"read compose file {path}: {e}")

    try:
        doc = yaml.safe_load(expand_env(text, env))
    except yaml.YAMLError as e:
        raise ConfigError(f"unmarshal compose yaml {path}: {e}")

    validate_compose(doc, str(path))
    return doc


def load_raw_yaml(path: Path) -> RawCompose:
    """Load a YAML mapping without validation (empty file -> {})."""
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"{path}: expected a mapping, got {type(data).__name__}")
    return data


def load_fragment(path: Path) -> Dict[str, Any]:
    """
    Load an extracted interface fragment.

    Raises:
        ExtractionError: If the fragment cannot be read or is not a mapping
    """
    try:
        return load_raw_yaml(path)
    except (OSError, yaml.YAMLError) as e:
        raise ExtractionError(f"parsing extracted fragment {path}: {e}")


def save_raw_yaml(path: Path, content: RawCompose) -> None:
    """Write a compose document, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(content, f, default_flow_style=False, sort_keys=False)
