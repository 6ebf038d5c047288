"""
Docker / Docker Compose adapter for coral.

Every docker invocation goes through DockerClient.run(), which turns a
non-zero exit into ExternalToolError. The command runner is injectable so
tests never need a docker daemon.
"""

import logging
import subprocess
from typing import Callable, List, Optional, Sequence

from coral.errors import ExternalToolError

logger = logging.getLogger(__name__)

# (command, capture_output) -> CompletedProcess
CommandRunner = Callable[[List[str], bool], subprocess.CompletedProcess]


def run_command(command: List[str], capture: bool) -> subprocess.CompletedProcess:
    """
    Run a command to completion.

    Uncaptured commands share this process's stdout/stderr so compose
    progress output reaches the user directly. The child runs in its own
    session: a terminal Ctrl-C reaches coral's signal handling only, never
    an extraction or compose command halfway through.
    """
    try:
        return subprocess.run(
            command,
            capture_output=capture,
            text=True,
            check=False,  # Don't raise, we'll handle errors
            start_new_session=True,
        )
    except FileNotFoundError as e:
        raise ExternalToolError(
            f"{command[0]} not found; is Docker installed?", command=command
        ) from e


class DockerClient:
    """Thin wrapper over the docker CLI."""

    def __init__(self, runner: Optional[CommandRunner] = None, docker_bin: str = "docker"):
        self.runner = runner or run_command
        self.docker_bin = docker_bin

    def run(self, args: Sequence[str], capture: bool = False, description: str = "") -> subprocess.CompletedProcess:
        """
        Run `docker <args>`.

        Raises:
            ExternalToolError: If the command exits non-zero
        """
        command = [self.docker_bin, *args]
        logger.debug(f"Executing: {' '.join(command)}")

        result = self.runner(command, capture)

        if result.returncode != 0:
            error_msg = f"{description or ' '.join(command)} failed with exit code {result.returncode}"
            stderr = result.stderr if capture else None
            if stderr:
                error_msg += f": {stderr.strip()[:500]}"
            raise ExternalToolError(error_msg, command=command, returncode=result.returncode, stderr=stderr)

        return result

    # -------------------------------------------------------------------------
    # Compose project operations
    # -------------------------------------------------------------------------

    @staticmethod
    def compose_args(project: str, compose_file: str, profiles: Sequence[str] = ()) -> List[str]:
        args = ["compose", "-p", project, "-f", str(compose_file)]
        for profile in profiles:
            args += ["--profile", profile]
        return args

    def up(self, project: str, compose_file: str, profile: str) -> None:
        """Start one profile of a project, detached."""
        self.run(
            self.compose_args(project, compose_file, [profile]) + ["up", "-d"],
            description=f"starting profile '{profile}'",
        )

    def kill(self, project: str, compose_file: str, profiles: Sequence[str] = ()) -> None:
        self.run(
            self.compose_args(project, compose_file, profiles) + ["kill"],
            description=f"killing compose project {project}",
        )

    def down(self, project: str, compose_file: str, profiles: Sequence[str] = ()) -> None:
        self.run(
            self.compose_args(project, compose_file, profiles) + ["down"],
            description=f"stopping compose project {project}",
        )

    def container_ids(self, project: str, compose_file: str, profiles: Sequence[str] = ()) -> List[str]:
        """IDs of the project's running containers."""
        result = self.run(
            self.compose_args(project, compose_file, profiles) + ["ps", "-q"],
            capture=True,
            description=f"listing containers of {project}",
        )
        return result.stdout.split()

    def container_name(self, container_id: str) -> str:
        result = self.run(
            ["inspect", "-f", "{{.Name}}", container_id],
            capture=True,
            description=f"inspecting container {container_id}",
        )
        return result.stdout.strip().strip("/")

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    def image_id(self, image: str) -> str:
        """Content-addressed ID of a local image."""
        result = self.run(
            ["inspect", "--format={{.Id}}", image],
            capture=True,
            description=f"inspecting image {image}",
        )
        return result.stdout.strip()

    def pull_with_compose(self, image: str, compose_file: str) -> None:
        self.run(["compose", "-f", str(compose_file), "pull"], description=f"pulling image {image}")

    def logs_command(self, container_id: str, history: bool = True) -> List[str]:
        """Command line that follows a container's logs (not executed here)."""
        if history:
            return [self.docker_bin, "logs", "-f", container_id]
        return [self.docker_bin, "logs", "-f", "--since", "0s", "--tail", "0", container_id]


def filter_listing(output: str, column: str, prefix: str = "coral") -> List[str]:
    """
    Keep the header of a `docker ps`/`docker images` table plus the rows
    whose value in column starts with prefix.

    Columns are located by their offset in the header line, which is how
    docker aligns its default table output.
    """
    lines = output.splitlines()
    if not lines:
        return []

    header = lines[0]
    offset = header.find(column)
    if offset < 0:
        return lines

    return [header] + [line for line in lines[1:] if line[offset:].startswith(prefix)]
