"""Tests for image extraction."""

import stat

import pytest

from coral.errors import ExternalToolError, ExtractionError
from coral.tools.extractor import (
    artifact_key,
    extract_image,
    fragment_path,
    get_image_artifact_id,
    manifest_path,
    remove_extraction_entrypoint,
    resolve_artifact_key,
    run_extraction,
    write_extraction_entrypoint,
)


def test_artifact_key_and_paths(tmp_path):
    key = artifact_key("sha256:abc", "camera")
    assert key == "sha256:abc-coral-camera"
    assert fragment_path(tmp_path, key) == tmp_path / "docker" / "sha256:abc-coral-camera.yaml"
    assert manifest_path(tmp_path, key) == tmp_path / "logs" / "sha256:abc-coral-camera.log"


def test_same_image_different_services_have_distinct_keys():
    assert artifact_key("sha256:abc", "left") != artifact_key("sha256:abc", "right")


class TestGetImageArtifactId:

    def test_local_image(self, docker, fake_docker):
        fake_docker.images["coral/camera:1"] = "sha256:abc"
        assert get_image_artifact_id(docker, "coral/camera:1") == "sha256:abc"
        assert fake_docker.compose_calls("pull") == []

    def test_pulls_missing_image(self, docker, fake_docker):
        fake_docker.pullable["coral/camera:1"] = "sha256:abc"
        assert get_image_artifact_id(docker, "coral/camera:1") == "sha256:abc"
        assert len(fake_docker.compose_calls("pull")) == 1

    def test_no_pull(self, docker, fake_docker):
        fake_docker.pullable["coral/camera:1"] = "sha256:abc"
        with pytest.raises(ExternalToolError):
            get_image_artifact_id(docker, "coral/camera:1", pull=False)
        assert fake_docker.compose_calls("pull") == []

    def test_pull_failure(self, docker, fake_docker):
        fake_docker.failures.append(("pull",))
        with pytest.raises(ExternalToolError, match="pulling image"):
            get_image_artifact_id(docker, "coral/unknown:1")


class TestExtractImage:

    def test_runs_extraction_container(self, docker, fake_docker, tmp_path):
        fake_docker.images["coral/camera:1"] = "sha256:abc"
        fake_docker.fragments["coral/camera:1"] = {"volumes": ["./models:/models"]}
        entrypoint = tmp_path / "extract.sh"

        key = extract_image(docker, "coral/camera:1", "camera", tmp_path, entrypoint, 1000, 1001)

        assert key == "sha256:abc-coral-camera"
        assert fake_docker.commands[-1] == [
            "docker", "run", "--rm",
            "--name", "coral-camera",
            "-e", "IMAGE_ID=sha256:abc-coral-camera",
            "-e", "EXPORT_PATH=/export",
            "-v", f"{tmp_path}:/export",
            "-v", f"{entrypoint}:/extract.sh",
            "--user", "1000:1001",
            "--entrypoint", "/extract.sh",
            "coral/camera:1",
        ]
        assert fragment_path(tmp_path, key).exists()
        assert manifest_path(tmp_path, key).exists()

    def test_unknown_image(self, docker, fake_docker, tmp_path):
        fake_docker.failures.append(("pull",))
        with pytest.raises(ExtractionError, match="failed to get image ID"):
            extract_image(docker, "coral/none:1", "x", tmp_path, tmp_path / "e.sh", 0, 0)

    def test_container_failure(self, docker, fake_docker, tmp_path):
        fake_docker.images["coral/camera:1"] = "sha256:abc"
        fake_docker.failures.append(("run", "--entrypoint"))
        with pytest.raises(ExtractionError, match="extracting image coral/camera:1"):
            extract_image(docker, "coral/camera:1", "camera", tmp_path, tmp_path / "e.sh", 0, 0)

    def test_key_resolved_before_container_runs(self, docker, fake_docker):
        fake_docker.images["coral/camera:1"] = "sha256:abc"
        assert resolve_artifact_key(docker, "coral/camera:1", "camera") == "sha256:abc-coral-camera"
        assert not any(c[1] == "run" for c in fake_docker.commands)

    def test_failing_container_can_leave_files_behind(self, docker, fake_docker, tmp_path):
        fake_docker.broken_extractions.add("coral/camera:1")
        key = artifact_key("sha256:abc", "camera")

        with pytest.raises(ExtractionError):
            run_extraction(docker, "coral/camera:1", "camera", key, tmp_path, tmp_path / "e.sh", 0, 0)

        assert manifest_path(tmp_path, key).exists()


def test_entrypoint_written_executable_and_removed(tmp_path):
    path = write_extraction_entrypoint(tmp_path)

    assert path == tmp_path / "extract.sh"
    assert path.read_text().startswith("#!/bin/sh")
    assert stat.S_IMODE(path.stat().st_mode) == 0o755

    remove_extraction_entrypoint(path)
    assert not path.exists()
    # Already gone is fine
    remove_extraction_entrypoint(path)
    remove_extraction_entrypoint(None)
