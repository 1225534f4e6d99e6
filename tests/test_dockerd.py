"""Tests for boxmatrix/workers/dockerd.py"""

import os
from unittest.mock import MagicMock, Mock, patch

import docker
import pytest

from boxmatrix.errors import RequirementsError
from boxmatrix.matrix import MatrixValue
from boxmatrix.sandbox import SandboxConfig
from boxmatrix.workers import WorkerRegistry
from boxmatrix.workers.dockerd import DockerSandbox, DockerWorker, matrix_env


def _config(mirror="127.0.0.1:5000", **choices):
    value = MatrixValue()
    for feature, (name, opaque) in choices.items():
        value = value.with_choice(feature, name, opaque)
    return SandboxConfig(mirror=mirror, matrix=value)


@pytest.fixture
def client():
    client = MagicMock()
    container = client.containers.run.return_value
    container.name = "boxmatrix-docker-abc"
    return client


class TestMatrixEnv:
    """Test environment derived from the sandbox config"""

    def test_choices_and_mirror_exported(self):
        env = matrix_env(_config(**{"snapshot-driver": ("overlay", 1)}))

        assert env == {
            "BOXMATRIX_MATRIX_SNAPSHOT_DRIVER": "overlay",
            "BOXMATRIX_MIRROR": "127.0.0.1:5000",
        }

    def test_no_mirror(self):
        assert matrix_env(SandboxConfig()) == {}


class TestDockerWorker:
    """Test sandbox creation"""

    def test_unsupported_choice_raises_requirements_error(self, client):
        worker = DockerWorker(supports={"driver": ["overlay"]}, client=client)

        with pytest.raises(RequirementsError, match="does not support driver=native"):
            worker.new(_config(driver=("native", 2)))

        client.containers.run.assert_not_called()

    def test_unlisted_feature_accepted(self, client):
        worker = DockerWorker(supports={"driver": ["overlay"]}, client=client)

        worker.check_requirements(_config(network=("host", "host")))

    def test_new_starts_container(self, client):
        worker = DockerWorker(image="busybox:latest", name="dockerd", client=client)

        sandbox, release = worker.new(_config(driver=("overlay", 1)))

        args, kwargs = client.containers.run.call_args
        assert args == ("busybox:latest", ["sleep", "infinity"])
        assert kwargs["detach"] is True
        assert kwargs["environment"]["BOXMATRIX_MATRIX_DRIVER"] == "overlay"
        assert kwargs["labels"] == {"io.boxmatrix.sandbox": "dockerd"}
        mounts = list(kwargs["volumes"].values())
        assert mounts == [{"bind": "/etc/boxmatrix", "mode": "ro"}]
        assert sandbox.value("driver") == 1
        assert sandbox.address == "docker-container://boxmatrix-docker-abc"
        release()

    def test_release_removes_container_and_config(self, client):
        worker = DockerWorker(client=client)

        sandbox, release = worker.new(_config())
        config_dir = next(iter(client.containers.run.call_args[1]["volumes"]))
        release()

        client.containers.run.return_value.remove.assert_called_once_with(force=True)
        assert not os.path.exists(config_dir)

    def test_run_failure_cleans_config_dir(self, client, tmp_path):
        config_dir = tmp_path / "cfg"
        config_dir.mkdir()
        client.containers.run.side_effect = docker.errors.ImageNotFound("no such image")
        worker = DockerWorker(client=client)

        with patch("boxmatrix.workers.dockerd.config_with_mirror", return_value=config_dir):
            with pytest.raises(docker.errors.ImageNotFound):
                worker.new(_config())

        assert not config_dir.exists()

    def test_no_mirror_no_mount(self, client):
        worker = DockerWorker(client=client)

        worker.new(SandboxConfig())

        assert client.containers.run.call_args[1]["volumes"] == {}

    def test_from_config(self):
        config = Mock()
        config.model.docker.image = "debian:bookworm"
        config.model.docker.rootless = True
        config.model.docker.command = ["tail", "-f", "/dev/null"]

        worker = DockerWorker.from_config(config, name="rootless")

        assert worker.image == "debian:bookworm"
        assert worker.rootless is True
        assert worker.command == ["tail", "-f", "/dev/null"]
        assert worker.name == "rootless"


class TestDockerSandbox:
    """Test sandbox operations"""

    def _sandbox(self, rootless=False):
        container = Mock()
        container.name = "sb-1"
        return DockerSandbox(SandboxConfig(), container, MagicMock(), rootless=rootless)

    @patch("boxmatrix.workers.dockerd.subprocess.Popen")
    def test_cmd_runs_docker_exec(self, mock_popen):
        sandbox = self._sandbox()

        sandbox.cmd("buildctl", "debug", "workers", stdout=-1)

        mock_popen.assert_called_once_with(
            ["docker", "exec", "sb-1", "buildctl", "debug", "workers"], stdout=-1
        )

    @patch("boxmatrix.workers.dockerd.subprocess.Popen")
    def test_cmd_rootless_user(self, mock_popen):
        sandbox = self._sandbox(rootless=True)

        sandbox.cmd("id")

        argv = mock_popen.call_args[0][0]
        assert argv[:4] == ["docker", "exec", "--user", "1000:1000"]
        assert sandbox.rootless

    def test_print_logs(self):
        sandbox = self._sandbox()
        sandbox.container.logs.return_value = b"line one\nline two\n"
        logger = Mock()

        sandbox.print_logs(logger)

        printed = [c[0][0] for c in logger.print.call_args_list]
        assert "> line one" in printed
        assert "> line two" in printed

    def test_print_logs_docker_error(self):
        sandbox = self._sandbox()
        sandbox.container.logs.side_effect = docker.errors.APIError("gone")
        logger = Mock()

        sandbox.print_logs(logger)

        logger.warning.assert_called_once()

    @patch("boxmatrix.workers.dockerd.new_registry")
    def test_new_registry_cleaned_on_close(self, mock_new_registry):
        cleanup = Mock()
        mock_new_registry.return_value = ("127.0.0.1:41000", cleanup)
        sandbox = self._sandbox()

        assert sandbox.new_registry() == "127.0.0.1:41000"
        sandbox.close()

        cleanup.assert_called_once()
        sandbox.container.remove.assert_called_once_with(force=True)

    def test_close_runs_every_cleanup_then_raises(self):
        sandbox = self._sandbox()
        later = Mock()
        sandbox.add_cleanup(later)
        sandbox.add_cleanup(Mock(side_effect=RuntimeError("first")))

        with pytest.raises(RuntimeError, match="first"):
            sandbox.close()

        later.assert_called_once()
        sandbox.container.remove.assert_called_once_with(force=True)

    def test_close_ignores_missing_container(self):
        sandbox = self._sandbox()
        sandbox.container.remove.side_effect = docker.errors.NotFound("gone")

        sandbox.close()


class TestWorkerRegistry:
    """Test explicit worker registration"""

    def test_register_and_list(self):
        registry = WorkerRegistry()
        first = DockerWorker(name="a", client=MagicMock())
        second = DockerWorker(name="b", client=MagicMock())

        registry.register(first)
        registry.register(second)

        assert registry.list() == [first, second]
        assert len(registry) == 2

    def test_duplicate_name_rejected(self):
        registry = WorkerRegistry()
        registry.register(DockerWorker(name="a", client=MagicMock()))

        with pytest.raises(ValueError, match="already registered"):
            registry.register(DockerWorker(name="a", client=MagicMock()))

    def test_list_is_snapshot(self):
        registry = WorkerRegistry()
        snapshot = registry.list()

        registry.register(DockerWorker(name="a", client=MagicMock()))

        assert snapshot == []
