# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Local OCI registry containers.

new_registry() starts a registry container on a random loopback port and
returns its host:port address with a cleanup function. When a mirror
directory is given, registry storage lives there so images copied by one
process are already present for the next one.
"""

import time
import uuid
from pathlib import Path
from typing import Callable, Optional, Tuple

import docker
import requests

from boxmatrix.errors import MirrorError
from boxmatrix.paths import MirrorPaths, SandboxPaths
from boxmatrix.utils.logging import get_logger

logger = get_logger(__name__)

REGISTRY_IMAGE = "registry:2"
REGISTRY_LABEL = "io.boxmatrix.registry"
READY_TIMEOUT = 30.0


def _published_port(container) -> str:
    """Return the host port docker assigned to the registry port."""
    try:
        container.reload()
    except docker.errors.DockerException as e:
        raise MirrorError(f"Registry container {container.name} disappeared: {e}") from e
    ports = container.attrs.get("NetworkSettings", {}).get("Ports", {}) or {}
    bindings = ports.get(SandboxPaths.REGISTRY_PORT) or []
    if not bindings:
        raise MirrorError(f"Registry container {container.name} has no published port")
    return bindings[0]["HostPort"]


def wait_for_registry(address: str, timeout: float = READY_TIMEOUT) -> None:
    """Poll the registry API until it answers.

    Raises:
        MirrorError: If the registry is not up within timeout seconds
    """
    deadline = time.monotonic() + timeout
    url = f"http://{address}/v2/"
    while True:
        try:
            response = requests.get(url, timeout=2.0)
            if response.status_code < 500:
                return
        except requests.RequestException:
            pass
        if time.monotonic() >= deadline:
            raise MirrorError(f"Registry at {address} did not become ready")
        time.sleep(0.2)


def new_registry(
    mirror_dir: Optional[Path] = None,
    image: str = REGISTRY_IMAGE,
    client: Optional[docker.DockerClient] = None,
) -> Tuple[str, Callable[[], None]]:
    """Start a registry container.

    Args:
        mirror_dir: Shared mirror directory for persistent storage
        image: Registry image to run
        client: Docker client (defaults to docker.from_env())

    Returns:
        (address, cleanup) where address is "127.0.0.1:<port>"

    Raises:
        MirrorError: If docker is unreachable or the registry fails to start
    """
    try:
        client = client or docker.from_env()
    except docker.errors.DockerException as e:
        raise MirrorError(
            f"Could not connect to Docker: {e}", hint="Is the docker daemon running?"
        ) from e

    volumes = {}
    if mirror_dir is not None:
        storage = MirrorPaths.storage_dir(mirror_dir)
        storage.mkdir(parents=True, exist_ok=True)
        volumes[str(storage)] = {"bind": SandboxPaths.REGISTRY_STORAGE, "mode": "rw"}

    name = f"boxmatrix-registry-{uuid.uuid4().hex[:12]}"
    try:
        container = client.containers.run(
            image,
            name=name,
            detach=True,
            ports={SandboxPaths.REGISTRY_PORT: ("127.0.0.1",)},
            volumes=volumes,
            labels={REGISTRY_LABEL: "1"},
        )
    except docker.errors.DockerException as e:
        raise MirrorError(f"Failed to start registry {image}: {e}") from e

    def cleanup() -> None:
        logger.debug(f"Removing registry container {name}")
        container.remove(force=True)

    try:
        address = f"127.0.0.1:{_published_port(container)}"
        wait_for_registry(address)
    except Exception:
        cleanup()
        raise

    logger.debug(f"Registry {name} listening on {address}")
    return address, cleanup
