"""
Extraction of interface fragments from service images.

Each service image is run once with the bundled extract.sh as entrypoint.
The script copies the image's interface files into the shared library root
and writes two files named by the artifact key:

    <lib>/docker/<key>.yaml   service-level compose fragment
    <lib>/logs/<key>.log      manifest: every path written, relative to <lib>

Teardown recomputes the same key with artifact_key() to find both files.
"""

import logging
import tempfile
from importlib import resources
from pathlib import Path
from typing import Optional

import yaml

from coral.errors import ExternalToolError, ExtractionError
from coral.tools.docker import DockerClient

logger = logging.getLogger(__name__)

ENTRYPOINT_NAME = "extract.sh"


def artifact_key(image_id: str, service: str) -> str:
    """
    Key for one service's extracted artifacts: "<image id>-coral-<service>".

    The same image used by two services yields two keys, so each service's
    artifacts are reclaimed independently.
    """
    return f"{image_id}-coral-{service}"


def fragment_path(lib_path: Path, key: str) -> Path:
    return Path(lib_path) / "docker" / f"{key}.yaml"


def manifest_path(lib_path: Path, key: str) -> Path:
    return Path(lib_path) / "logs" / f"{key}.log"


def get_image_artifact_id(docker: DockerClient, image: str, pull: bool = True) -> str:
    """
    Resolve an image to its content-addressed ID.

    When the image is not present locally and pull is True, it is pulled
    through a throw-away compose file and inspected again.

    Raises:
        ExternalToolError: If the image cannot be inspected (or pulled)
    """
    try:
        return docker.image_id(image)
    except ExternalToolError:
        if not pull:
            raise

    logger.info(f"Image {image} not found locally. Attempting to pull...")
    with tempfile.TemporaryDirectory(prefix="coral-pull-") as tmpdir:
        compose_file = Path(tmpdir) / "compose.yml"
        compose_file.write_text(
            yaml.safe_dump({"services": {"coral": {"image": image}}}, sort_keys=False)
        )
        docker.pull_with_compose(image, str(compose_file))

    return docker.image_id(image)


def resolve_artifact_key(docker: DockerClient, image: str, service: str) -> str:
    """
    Artifact key for a service, pulling its image if needed.

    Raises:
        ExtractionError: If the image ID cannot be resolved
    """
    try:
        return artifact_key(get_image_artifact_id(docker, image), service)
    except ExternalToolError as e:
        raise ExtractionError(f"failed to get image ID for {image}: {e}") from e


def extract_image(
    docker: DockerClient,
    image: str,
    service: str,
    lib_root: Path,
    entrypoint: Path,
    uid: int,
    gid: int,
) -> str:
    """
    Resolve the artifact key and run the extraction container for one service.

    Args:
        docker: Docker client
        image: Service image
        service: Service name (part of the artifact key)
        lib_root: Library root as seen by the docker daemon
        entrypoint: extract.sh path as seen by the docker daemon
        uid: User id the extraction runs as
        gid: Group id the extraction runs as

    Returns:
        The artifact key

    Raises:
        ExtractionError: If the image cannot be resolved or extraction fails
    """
    key = resolve_artifact_key(docker, image, service)
    run_extraction(docker, image, service, key, lib_root, entrypoint, uid, gid)
    return key


def run_extraction(
    docker: DockerClient,
    image: str,
    service: str,
    key: str,
    lib_root: Path,
    entrypoint: Path,
    uid: int,
    gid: int,
) -> None:
    """
    Run the extraction container under an already resolved key.

    A failing container may still have written files and a manifest under
    key, so callers reclaim key whether or not this raises.

    Raises:
        ExtractionError: If the container exits non-zero
    """
    try:
        docker.run(
            [
                "run", "--rm",
                "--name", f"coral-{service}",
                "-e", f"IMAGE_ID={key}",
                "-e", "EXPORT_PATH=/export",
                "-v", f"{lib_root}:/export",
                "-v", f"{entrypoint}:/{ENTRYPOINT_NAME}",
                "--user", f"{uid}:{gid}",
                "--entrypoint", f"/{ENTRYPOINT_NAME}",
                image,
            ],
            description=f"extracting image {image} for service {service}",
        )
    except ExternalToolError as e:
        raise ExtractionError(str(e)) from e


def write_extraction_entrypoint(lib_path: Path) -> Path:
    """Write the bundled extract.sh into the library root (mode 0755)."""
    content = resources.files("coral").joinpath("scripts").joinpath(ENTRYPOINT_NAME).read_text()
    target = Path(lib_path) / ENTRYPOINT_NAME
    target.write_text(content)
    target.chmod(0o755)
    return target


def remove_extraction_entrypoint(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"failed to remove extraction entrypoint {path}: {e}")
