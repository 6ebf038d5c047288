"""
Teardown of an instance: stop its compose project and reclaim its files.

Steps, in order, each logged and none fatal to the rest:
1. docker compose kill (only with the kill policy)
2. docker compose down
3. for every service in the merged compose file, delete the files listed
   in its extraction manifest, pruning directories left empty
4. delete the manifest and the extracted fragment
5. delete the merged compose file and the Instance Record

Teardown can be triggered concurrently (signal, tail error, normal exit).
Each instance name gets a RunOnce gate: the first caller performs the
work, later callers wait for it to finish and then return.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from coral.compose.parser import load_raw_yaml
from coral.compose.profiles import ordered_phases, service_profiles
from coral.errors import ExternalToolError
from coral.instance_store import InstanceStore
from coral.schemas import InstanceRecord
from coral.tools.docker import DockerClient
from coral.tools.extractor import artifact_key, fragment_path, get_image_artifact_id, manifest_path
from coral.utils import (
    print_info,
    print_warning,
    prune_empty_parents,
    remove_dir_if_empty,
    remove_file_and_prune,
)

logger = logging.getLogger(__name__)


class RunOnce:
    """
    Execute a function at most once.

    Concurrent callers block until the first call has completed, whether it
    returned or raised.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def __call__(self, func: Callable[..., Any], *args, **kwargs) -> bool:
        """
        Returns:
            True if this call ran func, False if it had already run
        """
        with self._lock:
            if self._done:
                return False
            try:
                func(*args, **kwargs)
            finally:
                self._done = True
        return True


class TeardownController:
    """Stops instances and removes their artifacts, exactly once per name."""

    def __init__(self, docker: DockerClient, store: Optional[InstanceStore] = None):
        self.docker = docker
        self.store = store or InstanceStore()
        self._gates: Dict[str, RunOnce] = {}
        self._gates_lock = threading.Lock()

    def _gate(self, name: str) -> RunOnce:
        with self._gates_lock:
            if name not in self._gates:
                self._gates[name] = RunOnce()
            return self._gates[name]

    def teardown(self, record: InstanceRecord, kill: bool = False, stop: bool = True) -> bool:
        """
        Tear an instance down.

        Args:
            record: The instance's record
            kill: Force-kill containers before `down`
            stop: Stop the compose project; False when nothing was started

        Returns:
            True if this call did the work, False if another call already had
        """
        performed = self._gate(record.name)(self._teardown, record, kill, stop)
        if not performed:
            logger.debug(f"Teardown of {record.name} already done")
        return performed

    def teardown_by_name(self, name: str, kill: bool = False) -> bool:
        """Tear down a persisted instance; a missing record is skipped."""
        record = self.store.read_by_name(name)
        if record is None:
            logger.warning(f"No instance record for {name}; nothing to tear down")
            return False
        return self.teardown(record, kill=kill)

    def _teardown(self, record: InstanceRecord, kill: bool, stop: bool) -> None:
        compose_file = Path(record.compose_file)
        lib_path = Path(record.lib_path)
        services = self.load_services(compose_file)

        if stop:
            profiles = self.profiles_of(services)
            self.stop_compose(record.name, compose_file, kill, profiles)

        print_info(f"Cleaning up instance {record.name}")
        self.clean_extracted(services, lib_path)
        remove_file_and_prune(compose_file, lib_path, logger)
        self.store.delete(record.name)
        logger.info(
            f"Instance {record.name} removed",
            extra={"event": "instance_removed", "instance": record.name},
        )

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    @staticmethod
    def load_services(compose_file: Path) -> Dict[str, Dict[str, Any]]:
        """Services of a merged compose file; {} if it is missing or corrupt."""
        try:
            doc = load_raw_yaml(compose_file)
        except FileNotFoundError:
            logger.debug(f"Compose file {compose_file} already removed")
            return {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Error loading compose file {compose_file}: {e}")
            return {}

        services = doc.get("services")
        if not isinstance(services, dict):
            logger.warning(f"Compose file {compose_file} is missing 'services'")
            return {}
        return {name: svc for name, svc in services.items() if isinstance(svc, dict)}

    @staticmethod
    def profiles_of(services: Dict[str, Dict[str, Any]]) -> List[str]:
        """Launch profiles used by the services, in precedence order."""
        tags = set()
        for service in services.values():
            tags.update(service_profiles(service))
        return ordered_phases(tags)

    def stop_compose(self, name: str, compose_file: Path, kill: bool, profiles: List[str]) -> None:
        if kill:
            try:
                self.docker.kill(name, str(compose_file), profiles)
            except ExternalToolError as e:
                print_warning(f"Failed to kill compose project {name}: {e}")
                logger.warning(f"killing compose: {e}", extra={"event": "kill_failed", "instance": name})

        try:
            self.docker.down(name, str(compose_file), profiles)
        except ExternalToolError as e:
            print_warning(f"Failed to stop compose project {name}: {e}")
            logger.warning(f"stopping compose: {e}", extra={"event": "down_failed", "instance": name})

    def clean_extracted(self, services: Dict[str, Dict[str, Any]], lib_path: Path) -> None:
        """Remove each service's extracted files, manifest, and fragment."""
        for name, service in services.items():
            image = service.get("image")
            if not isinstance(image, str) or not image:
                continue

            try:
                image_id = get_image_artifact_id(self.docker, image, pull=False)
            except ExternalToolError as e:
                logger.warning(f"Skipping cleanup for {name} (could not resolve image ID): {e}")
                continue

            self.remove_artifacts(lib_path, artifact_key(image_id, name))

    def remove_artifacts(self, lib_path: Path, key: str) -> None:
        """Remove one extraction's files, then its manifest and fragment."""
        manifest = manifest_path(lib_path, key)
        self.clean_files_from_manifest(manifest, lib_path)
        remove_file_and_prune(manifest, lib_path, logger)
        remove_file_and_prune(fragment_path(lib_path, key), lib_path, logger)

    def clean_files_from_manifest(self, manifest: Path, lib_path: Path) -> int:
        """
        Delete every path listed in an extraction manifest.

        Paths are relative to lib_path; anything resolving outside it is
        ignored. Directories are removed only when empty, and each removal
        prunes newly empty parents up to (not including) lib_path.

        Returns:
            Number of files removed by this call
        """
        try:
            with open(manifest, "r") as f:
                lines = f.readlines()
        except FileNotFoundError:
            return 0
        except OSError as e:
            logger.warning(f"Error reading manifest {manifest}: {e}")
            return 0

        root = lib_path.resolve()
        removed = 0
        for line in lines:
            rel = line.strip()
            if not rel or rel in (".", "./"):
                continue

            path = lib_path / rel
            if root not in path.resolve().parents:
                logger.warning(f"Ignoring manifest entry outside library root: {rel}")
                continue

            if path.is_dir() and not path.is_symlink():
                if remove_dir_if_empty(path, logger):
                    prune_empty_parents(path, lib_path, logger)
            elif path.exists() or path.is_symlink():
                if remove_file_and_prune(path, lib_path, logger):
                    removed += 1

        return removed
