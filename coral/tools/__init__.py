"""External tools coral drives: the docker CLI and the image extraction step."""

from .docker import DockerClient, run_command
from .extractor import (
    artifact_key,
    extract_image,
    fragment_path,
    get_image_artifact_id,
    manifest_path,
    resolve_artifact_key,
    run_extraction,
    write_extraction_entrypoint,
)

__all__ = [
    "DockerClient",
    "run_command",
    "artifact_key",
    "extract_image",
    "fragment_path",
    "get_image_artifact_id",
    "manifest_path",
    "resolve_artifact_key",
    "run_extraction",
    "write_extraction_entrypoint",
]
