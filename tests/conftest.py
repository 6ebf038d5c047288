import logging
import subprocess
from pathlib import Path

import pytest
import yaml

from coral.tools.docker import DockerClient


class FakeDocker:
    """
    Stands in for the docker CLI: records every command and answers the
    ones coral issues (image inspect, extraction runs, compose ps, ...).

    Attributes:
        images: image -> image id, for images "present locally"
        pullable: image -> image id, added to images on `compose pull`
        fragments: image -> compose fragment written by extraction
        exports: image -> {relative path: content} written by extraction
        services_running: services `compose ps` reports for any project
        failures: token tuples; a command containing all tokens exits 1
        broken_extractions: images whose extraction writes its files, then exits 1
        on_command: optional hook called with each command before answering
    """

    def __init__(self):
        self.commands = []
        self.images = {}
        self.pullable = {}
        self.fragments = {}
        self.exports = {}
        self.services_running = []
        self.failures = []
        self.broken_extractions = set()
        self.on_command = None
        self._container_names = {}

    def __call__(self, command, capture):
        command = list(command)
        self.commands.append(command)
        if self.on_command is not None:
            self.on_command(command)

        args = command[1:]
        for tokens in self.failures:
            if all(token in args for token in tokens):
                return self._result(command, 1, stderr="simulated failure")

        if args[:2] == ["inspect", "--format={{.Id}}"]:
            image = args[2]
            if image not in self.images:
                return self._result(command, 1, stderr=f"No such object: {image}")
            return self._result(command, 0, stdout=self.images[image] + "\n")

        if args[:2] == ["inspect", "-f"]:
            return self._result(command, 0, stdout=f"/{self._container_names[args[3]]}\n")

        if args[:1] == ["run"] and "/extract.sh" in args:
            self._extract(args)
            if args[-1] in self.broken_extractions:
                return self._result(command, 1, stderr="extract.sh: copy failed")
            return self._result(command, 0)

        if args[:1] == ["compose"] and args[-1] == "pull":
            compose = yaml.safe_load(Path(args[args.index("-f") + 1]).read_text())
            for service in compose["services"].values():
                if service["image"] in self.pullable:
                    self.images[service["image"]] = self.pullable[service["image"]]
            return self._result(command, 0)

        if args[:1] == ["compose"] and args[-2:] == ["ps", "-q"]:
            project = args[args.index("-p") + 1]
            ids = []
            for service in self.services_running:
                cid = f"{project}-{service}-id"
                self._container_names[cid] = f"{project}-{service}-1"
                ids.append(cid)
            return self._result(command, 0, stdout="\n".join(ids) + "\n")

        return self._result(command, 0)

    def _extract(self, args):
        env = dict(args[i + 1].split("=", 1) for i, a in enumerate(args) if a == "-e")
        volume = next(args[i + 1] for i, a in enumerate(args) if a == "-v" and args[i + 1].endswith(":/export"))
        lib = Path(volume.rsplit(":", 1)[0])
        image = args[-1]
        key = env["IMAGE_ID"]

        (lib / "docker").mkdir(parents=True, exist_ok=True)
        (lib / "logs").mkdir(parents=True, exist_ok=True)
        if image in self.fragments:
            (lib / "docker" / f"{key}.yaml").write_text(yaml.safe_dump(self.fragments[image]))

        written = []
        for rel, content in self.exports.get(image, {}).items():
            target = lib / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
            parts = Path(rel).parts
            for depth in range(1, len(parts)):
                parent = "/".join(parts[:depth])
                if parent not in written:
                    written.append(parent)
            written.append(rel)
        (lib / "logs" / f"{key}.log").write_text("".join(f"{p}\n" for p in written))

    @staticmethod
    def _result(command, returncode, stdout="", stderr=""):
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)

    def compose_calls(self, action):
        """Compose commands whose action (after the global flags) is `action`."""
        calls = []
        for command in self.commands:
            if command[1:2] != ["compose"]:
                continue
            rest = command[2:]
            while rest and rest[0] in ("-p", "-f", "--profile"):
                rest = rest[2:]
            if rest and rest[0] == action:
                calls.append(command)
        return calls

    def profiles_of(self, command):
        return [command[i + 1] for i, a in enumerate(command) if a == "--profile"]


@pytest.fixture(autouse=True)
def coral_home(tmp_path, monkeypatch):
    """Keep every test's instance records and config inside tmp_path."""
    home = tmp_path / "coral_home"
    monkeypatch.setenv("CORAL_HOME", str(home))
    for var in ("CORAL_LIB", "CORAL_IS_DOCKER", "CORAL_HOST_LIB", "CORAL_UID", "CORAL_GID"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture(autouse=True)
def reset_coral_logger():
    """CLI tests reconfigure the coral logger; hand it back to caplog afterwards."""
    yield
    coral_logger = logging.getLogger("coral")
    coral_logger.handlers = []
    coral_logger.propagate = True
    coral_logger.setLevel(logging.NOTSET)


@pytest.fixture
def fake_docker():
    return FakeDocker()


@pytest.fixture
def docker(fake_docker):
    return DockerClient(runner=fake_docker)


@pytest.fixture
def lib_path(tmp_path, monkeypatch):
    lib = tmp_path / "lib"
    lib.mkdir()
    monkeypatch.setenv("CORAL_LIB", str(lib))
    return lib.resolve()


@pytest.fixture
def project_dir(tmp_path, monkeypatch):
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    return project
