"""
Image conformance checks for `coral verify`.

A Coral image must:
- exist locally
- provide /ws with mode 777
- not ship an /export directory (the library root is mounted there)
- extract cleanly, with every extracted file owned by the configured uid/gid
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List

from coral.config import RuntimeSettings
from coral.errors import CoralError, ExternalToolError
from coral.tools.docker import DockerClient
from coral.tools.extractor import ENTRYPOINT_NAME, extract_image, write_extraction_entrypoint

logger = logging.getLogger(__name__)

WORKSPACE_DIR = "/ws"
WORKSPACE_MODE = "777"
EXPORT_DIR = "/export"


@dataclass
class CheckResult:
    name: str
    passed: bool
    detail: str = ""


def _probe(docker: DockerClient, image: str, entrypoint: str, *args: str) -> str:
    """Run a one-off command in the image and return its stdout."""
    result = docker.run(
        ["run", "--rm", "--entrypoint", entrypoint, image, *args],
        capture=True,
        description=f"running {entrypoint} in {image}",
    )
    return result.stdout.strip()


def check_workspace(docker: DockerClient, image: str) -> CheckResult:
    name = f"{WORKSPACE_DIR} exists with mode {WORKSPACE_MODE}"
    try:
        mode = _probe(docker, image, "stat", "-c", "%a", WORKSPACE_DIR)
    except ExternalToolError as e:
        return CheckResult(name, False, f"{WORKSPACE_DIR} not found: {e}")
    if mode != WORKSPACE_MODE:
        return CheckResult(name, False, f"mode is {mode}")
    return CheckResult(name, True)


def check_no_export(docker: DockerClient, image: str) -> CheckResult:
    name = f"{EXPORT_DIR} does not exist"
    try:
        _probe(docker, image, "test", "!", "-e", EXPORT_DIR)
    except ExternalToolError:
        return CheckResult(name, False, f"{EXPORT_DIR} must not be part of the image")
    return CheckResult(name, True)


def check_extraction(docker: DockerClient, image: str, settings: RuntimeSettings) -> CheckResult:
    """Extract into a scratch directory under the library root and check ownership."""
    name = f"extracted files owned by {settings.uid}:{settings.gid}"
    scratch = Path(tempfile.mkdtemp(prefix="coral-verify-", dir=settings.lib_path))
    try:
        entrypoint = write_extraction_entrypoint(scratch)
        image_scratch = settings.image_lib_path / scratch.name
        try:
            extract_image(
                docker,
                image,
                "verify",
                image_scratch,
                image_scratch / ENTRYPOINT_NAME,
                settings.uid,
                settings.gid,
            )
        except CoralError as e:
            return CheckResult(name, False, f"extraction failed: {e}")

        wrong = []
        for root, dirs, files in os.walk(scratch):
            for filename in files:
                path = Path(root) / filename
                if path == entrypoint:
                    continue
                stat = path.lstat()
                if stat.st_uid != settings.uid or stat.st_gid != settings.gid:
                    wrong.append(f"{path.relative_to(scratch)} ({stat.st_uid}:{stat.st_gid})")

        if wrong:
            return CheckResult(name, False, "wrong owner: " + ", ".join(wrong))
        return CheckResult(name, True)
    finally:
        shutil.rmtree(scratch, ignore_errors=True)


def verify_image(docker: DockerClient, image: str, settings: RuntimeSettings) -> List[CheckResult]:
    """
    Run every conformance check against an image.

    Checks after a missing image are skipped.
    """
    try:
        docker.image_id(image)
    except ExternalToolError as e:
        return [CheckResult("image exists locally", False, str(e))]

    results = [CheckResult("image exists locally", True)]
    results.append(check_workspace(docker, image))
    results.append(check_no_export(docker, image))
    results.append(check_extraction(docker, image, settings))

    for result in results:
        logger.debug(f"verify {image}: {result.name}: {'ok' if result.passed else result.detail}")
    return results
