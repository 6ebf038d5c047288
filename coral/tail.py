"""
Concurrent log multiplexer.

One worker thread per container runs `docker logs -f` and starts two reader
threads, one for stdout and one for stderr. Every line is printed as
"<service label> | <line>" while holding coral's output lock, the same lock
status lines and log records take, so no two lines ever mix. Order is kept
within one stream of one container only.

A worker ends when its log process exits:
- exit 0 (stream closed) or 130 (interrupted): clean stop
- anything else: an error is queued; other workers keep running

A supervisor thread sets `done` once every worker has finished. The caller
races its cancel token, `done`, and the error queue; the first to fire wins.
"""

import logging
import queue
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, IO, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.text import Text

from coral.errors import ExternalToolError
from coral.schemas import ContainerInfo
from coral.signals import CancellationToken
from coral.tools.docker import DockerClient
from coral.utils import output_lock

logger = logging.getLogger(__name__)

# docker logs exits with 130 when it is interrupted
INTERRUPTED_EXIT_CODE = 130

LABEL_WIDTH = 20

PALETTE = [
    "bold bright_red",
    "bold bright_green",
    "bold bright_yellow",
    "bold bright_blue",
    "bold bright_magenta",
    "bold bright_cyan",
    "bold bright_white",
    "bold bright_black",
]

# container -> argv of the process whose output is tailed
LogCommand = Callable[[ContainerInfo], List[str]]


def discover_containers(
    docker: DockerClient,
    instance_name: str,
    compose_file: str,
    profiles: Sequence[str] = (),
) -> List[ContainerInfo]:
    """
    List an instance's containers with their service labels.

    Raises:
        ExternalToolError: If docker fails or the instance has no containers
    """
    ids = docker.container_ids(instance_name, compose_file, profiles)
    if not ids:
        raise ExternalToolError(f"no containers found for instance {instance_name}")

    return [
        ContainerInfo.from_name(cid, docker.container_name(cid), instance_name)
        for cid in ids
    ]


class ColorAssigner:
    """Gives each service a palette color on first sight and reuses it."""

    def __init__(self, palette: Sequence[str] = PALETTE):
        self.palette = list(palette)
        self._colors: Dict[str, str] = {}

    def color_for(self, service: str) -> str:
        if service not in self._colors:
            self._colors[service] = self.palette[len(self._colors) % len(self.palette)]
        return self._colors[service]


@dataclass
class TailSession:
    """Handles returned by LogMultiplexer.tail()."""

    done: threading.Event
    errors: "queue.Queue[Exception]"
    cancel: Optional[CancellationToken] = None
    workers: List[threading.Thread] = field(default_factory=list)
    processes: List[subprocess.Popen] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def wait(
        self,
        cancel: Optional[CancellationToken] = None,
        poll_interval: float = 0.1,
    ) -> Tuple[str, Optional[Exception]]:
        """
        Block until the first of: cancel, all workers done, a worker error.

        The token given here overrides the one passed to tail().

        Returns:
            ("cancelled", None), ("done", None), or ("error", exception)
        """
        cancel = cancel if cancel is not None else self.cancel
        while True:
            if cancel is not None and cancel.cancelled:
                return "cancelled", None
            try:
                return "error", self.errors.get(timeout=poll_interval)
            except queue.Empty:
                pass
            if self.done.is_set():
                # A worker may have queued its error just before finishing
                try:
                    return "error", self.errors.get_nowait()
                except queue.Empty:
                    return "done", None

    def track(self, process: subprocess.Popen) -> None:
        with self._lock:
            self.processes.append(process)

    def stop(self) -> None:
        """Terminate every log process still running."""
        with self._lock:
            processes = list(self.processes)
        for process in processes:
            if process.poll() is None:
                try:
                    process.terminate()
                except OSError:
                    pass


class LogMultiplexer:
    """Tails many containers into one console without garbling lines."""

    def __init__(
        self,
        log_command: LogCommand,
        console: Optional[Console] = None,
        label_width: int = LABEL_WIDTH,
    ):
        self.log_command = log_command
        self.console = console or Console()
        self.label_width = label_width
        self.colors = ColorAssigner()
        self._print_lock = output_lock

    def emit(self, service: str, line: str) -> None:
        """Print one labeled line as an atomic unit."""
        text = Text.assemble(
            (f"{service:<{self.label_width}} | ", self.colors.color_for(service)),
            line,
        )
        with self._print_lock:
            self.console.print(text, markup=False, highlight=False, emoji=False, soft_wrap=True)

    def tail(
        self,
        containers: Sequence[ContainerInfo],
        cancel: Optional[CancellationToken] = None,
    ) -> TailSession:
        """
        Start one worker per container.

        Colors are assigned in container order before any thread starts, so
        the same service always gets the same color.
        """
        session = TailSession(done=threading.Event(), errors=queue.Queue(), cancel=cancel)

        for container in containers:
            self.colors.color_for(container.service)
            worker = threading.Thread(
                target=self._tail_container,
                args=(container, session),
                name=f"tail-{container.name}",
                daemon=True,
            )
            session.workers.append(worker)

        for worker in session.workers:
            worker.start()

        supervisor = threading.Thread(
            target=self._supervise, args=(session,), name="tail-supervisor", daemon=True
        )
        supervisor.start()
        return session

    def _supervise(self, session: TailSession) -> None:
        for worker in session.workers:
            worker.join()
        session.done.set()

    def _tail_container(self, container: ContainerInfo, session: TailSession) -> None:
        command = self.log_command(container)
        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            session.errors.put(ExternalToolError(
                f"failed to start logs for container {container.name}: {e}", command=command
            ))
            return

        session.track(process)
        readers = [
            threading.Thread(target=self._read_stream, args=(process.stdout, container), daemon=True),
            threading.Thread(target=self._read_stream, args=(process.stderr, container), daemon=True),
        ]
        for reader in readers:
            reader.start()

        returncode = process.wait()
        for reader in readers:
            reader.join()

        if returncode in (0, INTERRUPTED_EXIT_CODE) or returncode < 0:
            # Negative: terminated by a signal (stop() or the user's interrupt)
            logger.debug(f"Log stream for {container.name} closed (exit {returncode})")
            return

        session.errors.put(ExternalToolError(
            f"logs command exited for container {container.name} with exit code {returncode}",
            command=command,
            returncode=returncode,
        ))

    def _read_stream(self, stream: IO[str], container: ContainerInfo) -> None:
        with stream:
            for line in stream:
                self.emit(container.service, line.rstrip("\r\n"))


def run_tail(
    multiplexer: LogMultiplexer,
    containers: Sequence[ContainerInfo],
    cancel: CancellationToken,
) -> Tuple[str, Optional[Exception]]:
    """Tail until the first of cancel / done / error, then stop all log processes."""
    session = multiplexer.tail(containers, cancel)
    try:
        return session.wait()
    finally:
        session.stop()
        # Give readers a moment to flush what they already read
        deadline = time.monotonic() + 2.0
        for worker in session.workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))
