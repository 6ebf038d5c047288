"""
Error classes for coral.

The error taxonomy decides how far a failure propagates:
- ConfigError: Fatal before any container starts; nothing to clean up
- ExternalToolError: A docker/compose invocation failed; fatal to the
  current operation, the caller tears down whatever was started
- ExtractionError: An image could not be extracted or its fragment parsed;
  aborts the whole launch (all-or-nothing composition)

Cleanup never raises these: teardown steps log and continue.
Nothing in coral retries automatically.
"""

from typing import Optional, Sequence


class CoralError(Exception):
    """Base exception for coral."""
    pass


class ConfigError(CoralError):
    """
    Configuration error - abort before any container starts.

    Examples:
    - Compose file missing, unreadable, or without a 'services' mapping
    - Service without an 'image'
    - CORAL_LIB points to a missing directory
    - CORAL_IS_DOCKER=true without CORAL_HOST_LIB
    """
    pass


class ExternalToolError(CoralError):
    """
    A docker or docker compose command exited non-zero.

    Keeps the command line, exit code, and captured stderr (if any) so the
    CLI can report what failed.
    """

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
    ):
        super().__init__(message)
        self.command = list(command) if command else []
        self.returncode = returncode
        self.stderr = stderr


class ExtractionError(CoralError):
    """Extraction of an image's interface fragment failed."""
    pass


class InstanceNotFoundError(CoralError):
    """No persisted instance matched the requested name, handle, or group."""
    pass
