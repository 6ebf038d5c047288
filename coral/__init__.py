"""
coral - Lifecycle manager for Coral multi-container instances.

Merges a Docker Compose file with interface fragments extracted from each
service image, launches the result profile by profile, tails the logs of
every container, and tears the instance down again.
"""

__version__ = "0.1.0"
__author__ = "Coral Team"


__all__ = ["CoralConfig", "load_config", "get_coral_home"]

from .config import CoralConfig, load_config, get_coral_home
