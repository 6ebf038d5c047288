"""
Orchestrator for coral instances.

Coordinates the lifecycle of an instance:

    resolve config -> extract + merge -> write compose file and record
    -> startup gate -> phased launch -> (detached: return)
    -> (foreground: tail logs, then teardown on exit, interrupt, or error)

and the commands that act on persisted instances (shutdown, tail).
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from rich.console import Console

from coral.compose import (
    ProfileIndex,
    build_profile_index,
    load_compose,
    load_fragment,
    merge_service,
    save_raw_yaml,
)
from coral.config import (
    DEFAULT_GROUP,
    CoralConfig,
    RuntimeSettings,
    load_env,
    resolve_compose_file,
    resolve_env_file,
    resolve_runtime_settings,
)
from coral.errors import ConfigError, CoralError, ExternalToolError, InstanceNotFoundError
from coral.instance_store import InstanceStore
from coral.launcher import PhasedLauncher
from coral.schemas import ContainerInfo, InstanceRecord, generate_instance_name
from coral.signals import StartupGate, ignore_signals, listen_for_shutdown, restore_handlers
from coral.tail import LogMultiplexer, discover_containers, run_tail
from coral.teardown import TeardownController
from coral.tools.docker import DockerClient
from coral.tools.extractor import (
    ENTRYPOINT_NAME,
    fragment_path,
    remove_extraction_entrypoint,
    resolve_artifact_key,
    run_extraction,
    write_extraction_entrypoint,
)
from coral.utils import print_error, print_info, print_success, print_warning, remove_file

logger = logging.getLogger(__name__)


@dataclass
class LaunchOptions:
    """User choices for one launch."""

    compose_file: Optional[str] = None
    env_file: Optional[str] = None
    handle: Optional[str] = None
    group: Optional[str] = DEFAULT_GROUP
    detached: bool = False
    kill: bool = True
    executor_delay: float = 0.0
    profiles: List[str] = field(default_factory=list)


@dataclass
class LaunchResult:
    """
    Outcome of a launch.

    Attributes:
        record: The instance that was created
        reason: "detached", "interrupted" (before any container started),
            "cancelled", "done", or "error" (foreground tail outcomes)
        phases: Phases that were started
    """
    record: InstanceRecord
    reason: str
    phases: List[str] = field(default_factory=list)


@dataclass
class PreparedInstance:
    """A merged compose file and record on disk, nothing started yet."""

    record: InstanceRecord
    index: ProfileIndex
    settings: RuntimeSettings


class Orchestrator:
    """Runs launch, shutdown, and tail against one docker engine and instance store."""

    def __init__(
        self,
        config: Optional[CoralConfig] = None,
        docker: Optional[DockerClient] = None,
        store: Optional[InstanceStore] = None,
        console: Optional[Console] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or CoralConfig()
        self.docker = docker or DockerClient()
        self.store = store or InstanceStore()
        self.console = console
        self.launcher = PhasedLauncher(self.docker, sleep=sleep)
        self.teardown_controller = TeardownController(self.docker, self.store)

    # -------------------------------------------------------------------------
    # Launch
    # -------------------------------------------------------------------------

    def launch(self, options: LaunchOptions, gate: Optional[StartupGate] = None) -> LaunchResult:
        """
        Launch an instance.

        Interrupts are absorbed by the startup gate from the very start; an
        interrupt seen before the first container starts removes the files
        written so far and returns with reason "interrupted".

        Raises:
            ConfigError: Invalid compose file, environment, or options
            ExtractionError: An image could not be extracted or merged
            ExternalToolError: A compose phase or log stream failed (the
                instance is torn down before this propagates)
        """
        gate = gate or StartupGate()
        gate.install()
        try:
            prepared = self.prepare(options)
        except CoralError:
            gate.release()
            if gate.interrupted:
                print_warning("Interrupt received during setup. No containers were started.")
            raise
        except BaseException:
            gate.release()
            raise

        record = prepared.record
        if not gate.proceed():
            print_warning("Interrupt received before launch. Removing instance files...")
            self._teardown_uninterrupted(record, stop=False)
            return LaunchResult(record=record, reason="interrupted")

        if options.detached:
            return self._launch_detached(prepared, options)
        return self._launch_foreground(prepared, options)

    def prepare(self, options: LaunchOptions) -> PreparedInstance:
        """
        Extract, merge, and persist an instance without starting anything.

        Every selected service's image is extracted and its fragment merged
        into the service. Any extraction failure aborts the whole launch and
        the artifacts already extracted are removed.
        """
        env = load_env(resolve_env_file(options.env_file))
        compose_path = resolve_compose_file(options.compose_file)
        settings = resolve_runtime_settings(env, self.config.lib_path)

        if options.handle and self.store.find(handles=[options.handle]):
            raise ConfigError(f"handle {options.handle!r} is already in use")

        compose = load_compose(compose_path, env)
        services = compose["services"]
        index = build_profile_index(services, options.profiles)
        if not index.services or not index.ordered_phases():
            raise ConfigError("no services with a valid profile to run")

        entrypoint = write_extraction_entrypoint(settings.lib_path)
        image_entrypoint = settings.image_lib_path / ENTRYPOINT_NAME
        extracted: List[str] = []
        try:
            merged: Dict[str, dict] = {}
            for name in index.services:
                service = services[name]
                print_info(f"Extracting {service['image']} for {name}")
                key = resolve_artifact_key(self.docker, service["image"], name)
                extracted.append(key)
                run_extraction(
                    self.docker,
                    service["image"],
                    name,
                    key,
                    settings.image_lib_path,
                    image_entrypoint,
                    settings.uid,
                    settings.gid,
                )

                fragment_file = fragment_path(settings.lib_path, key)
                fragment = load_fragment(fragment_file) if fragment_file.exists() else None
                merged[name] = merge_service(service, fragment)

            compose["services"] = merged
            record = self._write_instance(compose, settings, options)
        except BaseException:
            for key in extracted:
                self.teardown_controller.remove_artifacts(settings.lib_path, key)
            raise
        finally:
            remove_extraction_entrypoint(entrypoint)

        return PreparedInstance(record=record, index=index, settings=settings)

    def _write_instance(self, compose: dict, settings: RuntimeSettings, options: LaunchOptions) -> InstanceRecord:
        """Write the merged compose file and then its record; both or neither."""
        name = generate_instance_name()
        compose_file = settings.lib_path / "compose" / f"{name}.yaml"
        try:
            save_raw_yaml(compose_file, compose)
        except OSError as e:
            raise CoralError(f"writing compose file {compose_file}: {e}")

        record = InstanceRecord(
            name=name,
            compose_file=str(compose_file),
            lib_path=str(settings.lib_path),
            handle=options.handle or None,
            group=options.group or None,
            detached=options.detached,
        )
        try:
            self.store.write(record)
        except OSError as e:
            remove_file(compose_file, logger)
            raise CoralError(f"writing instance record for {name}: {e}")

        logger.info(
            f"Instance {name} written to {compose_file}",
            extra={"event": "instance_created", "instance": name},
        )
        return record

    def _launch_detached(self, prepared: PreparedInstance, options: LaunchOptions) -> LaunchResult:
        record = prepared.record
        try:
            phases = self._start_phases(prepared, options)
        except BaseException:
            print_error(f"Launch of {record.name} failed. Tearing down...")
            self._teardown_uninterrupted(record, kill=options.kill)
            raise

        print_success(f"Instance {record.name} launched in detached mode")
        return LaunchResult(record=record, reason="detached", phases=phases)

    def _launch_foreground(self, prepared: PreparedInstance, options: LaunchOptions) -> LaunchResult:
        record = prepared.record
        phases: List[str] = []
        reason, error = "error", None
        try:
            with listen_for_shutdown() as token:
                phases = self._start_phases(prepared, options)
                if token.cancelled:
                    reason = "cancelled"
                else:
                    containers = discover_containers(
                        self.docker, record.name, record.compose_file, phases
                    )
                    reason, error = run_tail(
                        self._multiplexer(history=True), containers, token
                    )
            self._report_tail_outcome(reason, error)
        finally:
            self._teardown_uninterrupted(record, kill=options.kill)

        if error is not None:
            raise error
        return LaunchResult(record=record, reason=reason, phases=phases)

    def _teardown_uninterrupted(self, record: InstanceRecord, kill: bool = False, stop: bool = True) -> None:
        """Tear down with SIGINT/SIGTERM ignored so a second Ctrl-C cannot cut cleanup short."""
        previous = ignore_signals()
        try:
            self.teardown_controller.teardown(record, kill=kill, stop=stop)
        finally:
            restore_handlers(previous)

    def _start_phases(self, prepared: PreparedInstance, options: LaunchOptions) -> List[str]:
        index = prepared.index
        return self.launcher.launch(
            index.ordered_phases(),
            prepared.record.name,
            prepared.record.compose_file,
            executor_delay=options.executor_delay,
            phase_services=index.phases,
        )

    @staticmethod
    def _report_tail_outcome(reason: str, error: Optional[Exception]) -> None:
        if reason == "cancelled":
            print_warning("Interrupt received. Forcing shutdown...")
        elif reason == "done":
            print_info("All log tails completed. Shutting down...")
        else:
            print_error(f"Error while streaming logs: {error}")

    def _multiplexer(self, history: bool) -> LogMultiplexer:
        return LogMultiplexer(
            lambda container: self.docker.logs_command(container.id, history=history),
            console=self.console,
        )

    # -------------------------------------------------------------------------
    # Persisted instances
    # -------------------------------------------------------------------------

    def select_instances(
        self,
        names: Iterable[str] = (),
        handles: Iterable[str] = (),
        groups: Iterable[str] = (),
        compose_files: Iterable[str] = (),
        all_instances: bool = False,
    ) -> List[InstanceRecord]:
        """
        Resolve selectors to Instance Records.

        A compose file selects the instance named by its stem. With
        all_instances, every record is returned (possibly none).

        Raises:
            InstanceNotFoundError: If the selectors match nothing
        """
        if all_instances:
            return self.store.read_all()

        names = list(names) + [Path(f).stem for f in compose_files]
        handles, groups = list(handles), list(groups)
        if not (names or handles or groups):
            raise InstanceNotFoundError("no instance selector given")

        records = self.store.find(names=names, handles=handles, groups=groups)
        if not records:
            wanted = ", ".join(names + handles + groups)
            raise InstanceNotFoundError(f"no instance found matching: {wanted}")
        return records

    def shutdown(self, records: Iterable[InstanceRecord], kill: bool = False) -> List[str]:
        """
        Tear down each instance independently.

        Returns:
            Names of instances whose teardown raised; the rest are gone
        """
        failed = []
        for record in records:
            print_info(f"Shutting down {record.name}")
            try:
                self.teardown_controller.teardown(record, kill=kill)
            except (CoralError, OSError) as e:
                print_error(f"Failed to shut down {record.name}: {e}")
                logger.error(
                    f"teardown failed: {e}",
                    extra={"event": "teardown_failed", "instance": record.name},
                )
                failed.append(record.name)
        return failed

    def tail(self, records: Iterable[InstanceRecord], history: bool = False) -> Tuple[str, Optional[Exception]]:
        """
        Follow the logs of persisted instances until interrupted.

        Interrupting detaches; the instances keep running.

        Raises:
            ExternalToolError: If no containers are found, or a log stream fails
        """
        containers: List[ContainerInfo] = []
        for record in records:
            services = TeardownController.load_services(Path(record.compose_file))
            profiles = TeardownController.profiles_of(services)
            try:
                containers.extend(
                    discover_containers(self.docker, record.name, record.compose_file, profiles)
                )
            except ExternalToolError as e:
                print_warning(f"Skipping {record.name}: {e}")

        if not containers:
            raise ExternalToolError("no running containers to tail")

        with listen_for_shutdown() as token:
            reason, error = run_tail(self._multiplexer(history=history), containers, token)

        if reason == "cancelled":
            print_info("Detached from logs. Instances are still running.")
        elif reason == "done":
            print_info("All log tails completed.")
        elif error is not None:
            raise error
        return reason, error
