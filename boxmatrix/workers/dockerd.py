# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Worker backed by plain Docker containers.

Each sandbox is a long-running container of the configured image with the
mirror config mounted read-only at /etc/boxmatrix. Matrix choices are
exported as BOXMATRIX_MATRIX_<FEATURE> environment variables.
"""

import re
import shutil
import subprocess
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import docker
from docker.models.containers import Container

from boxmatrix.errors import RequirementsError
from boxmatrix.mirror import config_with_mirror
from boxmatrix.paths import SandboxPaths
from boxmatrix.registry import new_registry
from boxmatrix.sandbox import ReleaseFunc, Sandbox, SandboxConfig, Worker
from boxmatrix.utils.logging import BoxmatrixLogger, get_logger

logger = get_logger(__name__)

SANDBOX_LABEL = "io.boxmatrix.sandbox"


def matrix_env(config: SandboxConfig) -> Dict[str, str]:
    """Environment variables describing the sandbox configuration."""
    env = {}
    for feature, choice in config.matrix.as_dict().items():
        key = re.sub(r"[^A-Za-z0-9]", "_", feature).upper()
        env[f"BOXMATRIX_MATRIX_{key}"] = choice
    if config.mirror:
        env["BOXMATRIX_MIRROR"] = config.mirror
    return env


class DockerSandbox(Sandbox):
    """A running container owned by one leaf."""

    def __init__(
        self,
        config: SandboxConfig,
        container: Container,
        client: docker.DockerClient,
        rootless: bool = False,
    ):
        super().__init__(config)
        self.container = container
        self.client = client
        self._rootless = rootless
        self._cleanups: List[Callable[[], None]] = []

    @property
    def address(self) -> str:
        return f"docker-container://{self.container.name}"

    @property
    def rootless(self) -> bool:
        return self._rootless

    def print_logs(self, logger: BoxmatrixLogger) -> None:
        try:
            output = self.container.logs(stdout=True, stderr=True)
        except docker.errors.DockerException as e:
            logger.warning(f"Could not read logs of {self.container.name}: {e}")
            return
        logger.print(f">>> {self.container.name} logs", style="bold")
        for line in output.decode("utf-8", errors="replace").splitlines():
            logger.print(f"> {line}")
        logger.print("<<<", style="bold")

    def cmd(self, *args: str, **popen_kwargs: Any) -> subprocess.Popen:
        argv = ["docker", "exec"]
        if self._rootless:
            argv += ["--user", "1000:1000"]
        argv += [self.container.name, *args]
        return subprocess.Popen(argv, **popen_kwargs)

    def new_registry(self) -> str:
        address, cleanup = new_registry(client=self.client)
        self._cleanups.append(cleanup)
        return address

    def add_cleanup(self, cleanup: Callable[[], None]) -> None:
        self._cleanups.append(cleanup)

    def close(self) -> None:
        """Remove the container and everything started for it.

        Every cleanup runs; the first error is raised afterwards.
        """
        errors: List[Exception] = []
        for cleanup in reversed(self._cleanups):
            try:
                cleanup()
            except Exception as e:
                errors.append(e)
        self._cleanups.clear()
        try:
            self.container.remove(force=True)
        except docker.errors.NotFound:
            pass
        except docker.errors.DockerException as e:
            errors.append(e)
        if errors:
            raise errors[0]


class DockerWorker(Worker):
    """Creates sandboxes as docker containers.

    Args:
        image: Sandbox image
        name: Worker name used in leaf names
        rootless: Run sandbox commands as an unprivileged user
        supports: feature -> allowed choice names. Features not listed are
            accepted with any choice.
        command: Container command keeping the sandbox alive
        client: Docker client (defaults to docker.from_env() on first use)
    """

    def __init__(
        self,
        image: str = "alpine:latest",
        name: str = "docker",
        rootless: bool = False,
        supports: Optional[Mapping[str, Iterable[str]]] = None,
        command: Optional[List[str]] = None,
        client: Optional[docker.DockerClient] = None,
    ):
        self.image = image
        self._name = name
        self.rootless = rootless
        self.supports = {k: frozenset(v) for k, v in (supports or {}).items()}
        self.command = command or ["sleep", "infinity"]
        self._client = client

    @classmethod
    def from_config(cls, config, **kwargs) -> "DockerWorker":
        """Build a worker from the docker section of a MatrixConfig."""
        docker_config = config.model.docker
        kwargs.setdefault("image", docker_config.image)
        kwargs.setdefault("rootless", docker_config.rootless)
        kwargs.setdefault("command", list(docker_config.command))
        return cls(**kwargs)

    @property
    def name(self) -> str:
        return self._name

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def check_requirements(self, config: SandboxConfig) -> None:
        """Raise RequirementsError if config selects an unsupported choice."""
        for feature, choice in config.matrix.as_dict().items():
            allowed = self.supports.get(feature)
            if allowed is not None and choice not in allowed:
                raise RequirementsError(
                    f"worker {self.name} does not support {feature}={choice}"
                )

    def new(self, config: SandboxConfig) -> Tuple[Sandbox, ReleaseFunc]:
        self.check_requirements(config)

        volumes = {}
        config_dir: Optional[Path] = None
        if config.mirror:
            config_dir = config_with_mirror(config.mirror)
            volumes[str(config_dir)] = {"bind": SandboxPaths.CONFIG_DIR, "mode": "ro"}

        name = f"boxmatrix-{self.name}-{uuid.uuid4().hex[:12]}"
        try:
            container = self.client.containers.run(
                self.image,
                self.command,
                name=name,
                detach=True,
                environment=matrix_env(config),
                volumes=volumes,
                labels={SANDBOX_LABEL: self.name},
                network_mode="host",
            )
        except Exception:
            if config_dir is not None:
                shutil.rmtree(config_dir, ignore_errors=True)
            raise

        logger.debug(f"Started sandbox {name} ({config.matrix.as_dict()})")
        sandbox = DockerSandbox(config, container, self.client, rootless=self.rootless)
        if config_dir is not None:
            sandbox.add_cleanup(lambda: shutil.rmtree(config_dir, ignore_errors=True))
        return sandbox, sandbox.close
