import subprocess
from datetime import datetime, timezone

import pytest
import yaml
from click.testing import CliRunner

from coral import __version__
from coral.cli import main
from coral.instance_store import InstanceStore
from coral.schemas import InstanceRecord
from coral.tools.docker import DockerClient


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def patched_docker(monkeypatch, fake_docker):
    """Route every DockerClient the CLI builds to the fake runner."""
    monkeypatch.setattr("coral.tools.docker.run_command", fake_docker)
    return fake_docker


def _persist(lib_path, name, **kwargs):
    compose_file = lib_path / "compose" / f"{name}.yaml"
    compose_file.parent.mkdir(parents=True, exist_ok=True)
    compose_file.write_text(yaml.safe_dump(
        {"services": {"agent": {"image": "coral/agent:1", "profiles": ["executors"]}}}
    ))
    record = InstanceRecord(
        name=name,
        compose_file=str(compose_file),
        lib_path=str(lib_path),
        created_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
        **kwargs,
    )
    InstanceStore().write(record)
    return record


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


class TestInit:

    def test_creates_config(self, runner, coral_home):
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 0
        assert "Initialized coral config" in result.output

        cfg = yaml.safe_load((coral_home / "config.yaml").read_text())
        assert cfg["group"] == "coral"
        assert cfg["executor_delay"] == 0.0
        assert (coral_home / "instances").is_dir()

    def test_does_not_overwrite_without_force(self, runner, coral_home):
        coral_home.mkdir(parents=True)
        (coral_home / "config.yaml").write_text("group: mine\n")

        result = runner.invoke(main, ["init"])
        assert result.exit_code == 1
        assert "Config already exists" in result.output
        assert (coral_home / "config.yaml").read_text() == "group: mine\n"

    def test_force_overwrites(self, runner, coral_home):
        coral_home.mkdir(parents=True)
        (coral_home / "config.yaml").write_text("group: mine\n")

        result = runner.invoke(main, ["init", "--force"])
        assert result.exit_code == 0
        assert yaml.safe_load((coral_home / "config.yaml").read_text())["group"] == "coral"

    def test_works_with_broken_config(self, runner, coral_home):
        coral_home.mkdir(parents=True)
        (coral_home / "config.yaml").write_text("- not a mapping\n")

        assert runner.invoke(main, ["list"]).exit_code == 0
        result = runner.invoke(main, ["launch"])
        assert result.exit_code == 1
        assert "Config not loaded" in result.output

        assert runner.invoke(main, ["init", "--force"]).exit_code == 0


class TestLaunch:

    @pytest.fixture
    def project(self, project_dir, lib_path, patched_docker):
        (project_dir / "compose.yaml").write_text(yaml.safe_dump({
            "services": {
                "camera": {"image": "coral/camera:1", "profiles": ["drivers"]},
                "agent": {"image": "coral/agent:1", "profiles": ["executors"]},
            }
        }, sort_keys=False))
        patched_docker.images.update({"coral/camera:1": "sha256:camera", "coral/agent:1": "sha256:agent"})
        return project_dir

    def test_detached(self, runner, project, patched_docker):
        result = runner.invoke(main, ["launch", "-d", "--handle", "demo", "-p", "executors"])

        assert result.exit_code == 0, result.output
        records = InstanceStore().read_all()
        assert len(records) == 1
        assert records[0].name in result.output
        assert records[0].handle == "demo"
        ups = patched_docker.compose_calls("up")
        assert [patched_docker.profiles_of(c) for c in ups] == [["executors"]]

    def test_config_defaults_apply(self, runner, project, patched_docker, coral_home):
        coral_home.mkdir(parents=True)
        (coral_home / "config.yaml").write_text("group: lab\nexecutor_delay: 0.01\n")

        result = runner.invoke(main, ["launch", "--detached"])

        assert result.exit_code == 0, result.output
        assert InstanceStore().read_all()[0].group == "lab"
        assert "Delaying 0.01s before starting executors" in result.output

    def test_invalid_profile(self, runner, project):
        result = runner.invoke(main, ["launch", "-p", "storage"])
        assert result.exit_code == 2

    def test_negative_delay_rejected(self, runner, project):
        result = runner.invoke(main, ["launch", "--executor-delay", "-1"])
        assert result.exit_code == 2

    def test_missing_compose_file(self, runner, project_dir, lib_path):
        result = runner.invoke(main, ["launch", "-d"])
        assert result.exit_code == 1
        assert "no compose file found" in result.output

    def test_phase_failure_exits_non_zero(self, runner, project, patched_docker):
        patched_docker.failures.append(("--profile", "executors", "up"))

        result = runner.invoke(main, ["launch", "-d"])

        assert result.exit_code == 1
        assert "starting profile 'executors'" in result.output
        assert InstanceStore().read_all() == []


class TestShutdown:

    def test_requires_selector(self, runner):
        result = runner.invoke(main, ["shutdown"])
        assert result.exit_code == 2
        assert "--all" in result.output

    def test_all_without_instances(self, runner, patched_docker):
        result = runner.invoke(main, ["shutdown", "--all"])
        assert result.exit_code == 0
        assert "No instances found." in result.output

    def test_unknown_name(self, runner, patched_docker):
        result = runner.invoke(main, ["shutdown", "--name", "coral-404"])
        assert result.exit_code == 1
        assert "no instance found" in result.output

    def test_by_handle(self, runner, patched_docker, lib_path):
        _persist(lib_path, "coral-1", handle="demo")
        _persist(lib_path, "coral-2", handle="other")

        result = runner.invoke(main, ["shutdown", "--handle", "demo", "--kill"])

        assert result.exit_code == 0, result.output
        assert [r.name for r in InstanceStore().read_all()] == ["coral-2"]
        assert len(patched_docker.compose_calls("kill")) == 1
        assert len(patched_docker.compose_calls("down")) == 1

    def test_all(self, runner, patched_docker, lib_path):
        for i in range(3):
            _persist(lib_path, f"coral-{i}", group="lab")
        patched_docker.failures.append(("coral-0", "down"))

        result = runner.invoke(main, ["shutdown", "--all"])

        assert result.exit_code == 0, result.output
        assert InstanceStore().read_all() == []
        assert len(patched_docker.compose_calls("down")) == 3
        assert patched_docker.compose_calls("kill") == []


class TestTail:

    def test_requires_selector(self, runner):
        assert runner.invoke(main, ["tail"]).exit_code == 2

    def test_no_instances(self, runner, patched_docker):
        result = runner.invoke(main, ["tail", "--all"])
        assert result.exit_code == 0
        assert "No instances found." in result.output

    def test_no_containers(self, runner, patched_docker, lib_path):
        _persist(lib_path, "coral-1")
        result = runner.invoke(main, ["tail", "--name", "coral-1"])
        assert result.exit_code == 1
        assert "no running containers" in result.output


def test_list(runner, lib_path):
    _persist(lib_path, "coral-1", handle="demo", group="lab")

    result = runner.invoke(main, ["list"])

    assert result.exit_code == 0
    assert "coral-1" in result.output
    assert "demo" in result.output
    assert "lab" in result.output


def test_list_empty(runner):
    result = runner.invoke(main, ["list"])
    assert result.exit_code == 0
    assert "No instances found." in result.output


@pytest.mark.parametrize(
    "command, column, rows",
    [
        ("ps", "IMAGE", ["abc   coral/cam   up", "def   nginx       up"]),
        ("images", "REPOSITORY", ["coral/cam   1   sha", "nginx       1   sha"]),
    ],
)
def test_docker_passthrough(runner, monkeypatch, command, column, rows):
    calls = []
    header = "ID    IMAGE       STATUS" if column == "IMAGE" else "REPOSITORY  TAG SHA"

    def fake_run(cmd, capture):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="\n".join([header] + rows) + "\n", stderr="")

    monkeypatch.setattr("coral.tools.docker.run_command", fake_run)
    result = runner.invoke(main, [command, "-a", "--no-trunc"])

    assert result.exit_code == 0, result.output
    assert calls == [["docker", command, "-a", "--no-trunc"]]
    assert "coral/cam" in result.output
    assert "nginx" not in result.output
    assert header in result.output


def test_verify_missing_image(runner, patched_docker, lib_path):
    result = runner.invoke(main, ["verify", "coral/none:1"])
    assert result.exit_code == 1
    assert "image exists locally" in result.output


def test_verify_conforming_image(runner, patched_docker, lib_path, monkeypatch):
    patched_docker.images["coral/camera:1"] = "sha256:camera"
    patched_docker.exports["coral/camera:1"] = {"share/camera/calib.yaml": "k: 1\n"}
    original = patched_docker.__call__

    def answer(command, capture):
        if "stat" in command:
            return subprocess.CompletedProcess(command, 0, stdout="777\n", stderr="")
        return original(command, capture)

    monkeypatch.setattr("coral.tools.docker.run_command", answer)

    result = runner.invoke(main, ["verify", "coral/camera:1"])

    assert result.exit_code == 0, result.output
    assert "/ws exists with mode 777" in result.output
    assert "/export does not exist" in result.output
    # Scratch extraction directory was removed
    assert list(lib_path.iterdir()) == []


def test_verify_wrong_workspace_mode(runner, patched_docker, lib_path, monkeypatch):
    patched_docker.images["coral/camera:1"] = "sha256:camera"
    original = patched_docker.__call__

    def answer(command, capture):
        if "stat" in command:
            return subprocess.CompletedProcess(command, 0, stdout="755\n", stderr="")
        return original(command, capture)

    monkeypatch.setattr("coral.tools.docker.run_command", answer)

    result = runner.invoke(main, ["verify", "coral/camera:1"])
    assert result.exit_code == 1
    assert "mode is 755" in result.output
