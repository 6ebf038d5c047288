"""
Configuration management for coral.

Two layers:
- CoralConfig: user defaults from <coral home>/config.yaml (optional)
- RuntimeSettings: per-launch settings resolved from the environment
  (.env file layered over the process environment)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import dotenv_values

from coral.errors import ConfigError


COMPOSE_FILE_CANDIDATES = [
    "docker-compose.yaml",
    "compose.yaml",
    "docker-compose.yml",
    "compose.yml",
]

DEFAULT_GROUP = "coral"


def get_coral_home() -> Path:
    """Return the coral home directory ($CORAL_HOME or ~/.coral_cli)."""
    home = os.environ.get("CORAL_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.coral_cli").expanduser()


def get_instances_dir() -> Path:
    """Directory holding one Instance Record file per instance."""
    return get_coral_home() / "instances"


@dataclass
class CoralConfig:
    """User defaults loaded from config.yaml."""

    lib_path: Optional[str] = None
    group: str = DEFAULT_GROUP
    executor_delay: float = 0.0
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lib_path": self.lib_path,
            "group": self.group,
            "executor_delay": self.executor_delay,
            "log_level": self.log_level,
            "log_file": self.log_file,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CoralConfig":
        try:
            executor_delay = float(data.get("executor_delay", 0.0) or 0.0)
        except (TypeError, ValueError):
            raise ConfigError(
                f"executor_delay must be a number, got {data.get('executor_delay')!r}"
            )
        if executor_delay < 0:
            raise ConfigError("executor_delay must not be negative")

        return cls(
            lib_path=data.get("lib_path"),
            group=data.get("group") or DEFAULT_GROUP,
            executor_delay=executor_delay,
            log_level=str(data.get("log_level") or "INFO").upper(),
            log_file=data.get("log_file"),
        )


def load_config(config_path: Optional[Path] = None) -> CoralConfig:
    """
    Load user defaults.

    Args:
        config_path: Path to config file. Defaults to <coral home>/config.yaml

    Returns:
        CoralConfig (built-in defaults when the file does not exist)

    Raises:
        ConfigError: If the file exists but is not a valid YAML mapping
    """
    if config_path is None:
        config_path = get_coral_home() / "config.yaml"

    if not config_path.exists():
        return CoralConfig()

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    if data is None:
        return CoralConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    return CoralConfig.from_dict(data)


# =============================================================================
# Environment resolution
# =============================================================================

def resolve_compose_file(user_path: Optional[str] = None) -> Path:
    """Return the user's compose file or the first default candidate found."""
    if user_path:
        return Path(user_path)
    for candidate in COMPOSE_FILE_CANDIDATES:
        if Path(candidate).exists():
            return Path(candidate)
    raise ConfigError(
        f"no compose file found (tried: {', '.join(COMPOSE_FILE_CANDIDATES)})"
    )


def resolve_env_file(user_path: Optional[str] = None) -> Optional[Path]:
    """Return the user's .env file, ./.env when present, or None."""
    if user_path:
        return Path(user_path)
    if Path(".env").exists():
        return Path(".env")
    return None


def load_env(env_file: Optional[Path] = None) -> Dict[str, str]:
    """
    Build the environment mapping used for compose substitutions.

    Values from the .env file win; the process environment fills the gaps.
    """
    env: Dict[str, str] = {}

    if env_file is not None:
        if not env_file.exists():
            raise ConfigError(f"env file not found: {env_file}")
        for key, value in dotenv_values(env_file).items():
            env[key] = value if value is not None else ""

    for key, value in os.environ.items():
        env.setdefault(key, value)

    return env


@dataclass
class RuntimeSettings:
    """Settings a launch needs from the environment."""

    lib_path: Path
    host_lib_path: Optional[Path] = None
    uid: int = field(default_factory=os.getuid)
    gid: int = field(default_factory=os.getgid)

    @property
    def is_docker(self) -> bool:
        return self.host_lib_path is not None

    @property
    def image_lib_path(self) -> Path:
        """Library root as seen by the docker daemon (host path in docker)."""
        return self.host_lib_path if self.host_lib_path else self.lib_path


def _parse_id(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")


def resolve_runtime_settings(
    env: Mapping[str, str],
    default_lib_path: Optional[str] = None,
) -> RuntimeSettings:
    """
    Validate CORAL_* environment variables.

    Args:
        env: Environment mapping from load_env()
        default_lib_path: Library root from config.yaml, used when CORAL_LIB is unset

    Raises:
        ConfigError: On a missing CORAL_LIB directory, missing CORAL_HOST_LIB
            inside docker, or non-integer CORAL_UID/CORAL_GID
    """
    lib_value = env.get("CORAL_LIB", "").strip() or (default_lib_path or "").strip()

    if not lib_value:
        lib_path = Path("./lib").resolve()
        try:
            lib_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"creating library directory {lib_path}: {e}")
    else:
        lib_path = Path(lib_value).expanduser().resolve()
        if not lib_path.exists():
            raise ConfigError(f"CORAL_LIB path {str(lib_path)!r} does not exist")

    host_lib_path = None
    if env.get("CORAL_IS_DOCKER", "").strip().lower() == "true":
        host_value = env.get("CORAL_HOST_LIB", "").strip()
        if not host_value:
            raise ConfigError(
                "environment variable CORAL_HOST_LIB is required when running in Docker; "
                "it should be an absolute path in the host filesystem that points to "
                "the Docker mounted library path"
            )
        host_lib_path = Path(host_value)

    return RuntimeSettings(
        lib_path=lib_path,
        host_lib_path=host_lib_path,
        uid=_parse_id(env, "CORAL_UID", os.getuid()),
        gid=_parse_id(env, "CORAL_GID", os.getgid()),
    )
