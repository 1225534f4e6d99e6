# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Shared registry mirror lifecycle.

One registry mirror serves every sandbox of a run. MirrorManager starts it
on the first acquire(), seeds it with a fixed set of bootstrap images and
removes it when the last holder releases it.

When a mirror directory is configured (BOXMATRIX_REGISTRY_MIRROR_DIR),
provisioning is serialized across processes with a lock file in that
directory. The lock is dropped as soon as the mirror is seeded; from then
on every process uses its own registry over the shared storage.
"""

import os
import platform
import tempfile
import threading
from functools import partial
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple

import docker
from docker.utils import parse_repository_tag

from boxmatrix.errors import ImageCopyError, LeaseError, MirrorError, MirrorNotRunningError
from boxmatrix.lease import FileLease
from boxmatrix.paths import MirrorPaths
from boxmatrix.registry import REGISTRY_IMAGE, new_registry
from boxmatrix.utils.logging import get_logger

logger = get_logger(__name__)

ProvisionFunc = Callable[[Optional[Path]], Tuple[str, Callable[[], None]]]
PopulateFunc = Callable[[str], None]

# platform.machine() -> docker hub architecture namespace
_ARCH_NAMESPACES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64v8",
    "arm64": "arm64v8",
    "armv7l": "arm32v7",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}

COPY_IMAGE = "tonistiigi/copy:v0.1.4"


def offline_images(machine: Optional[str] = None) -> Dict[str, str]:
    """Bootstrap images every mirror is seeded with, target -> origin."""
    machine = (machine or platform.machine()).lower()
    arch = _ARCH_NAMESPACES.get(machine, machine)
    return {
        "library/busybox:latest": f"docker.io/{arch}/busybox:latest",
        "library/alpine:latest": f"docker.io/{arch}/alpine:latest",
        COPY_IMAGE: f"docker.io/{COPY_IMAGE}",
    }


def copy_images_local(
    host: str,
    images: Mapping[str, str],
    client: Optional[docker.DockerClient] = None,
) -> None:
    """Copy each origin image into the registry at host under its target name.

    Stops at the first failure.

    Raises:
        ImageCopyError: If any pull, tag or push fails
    """
    client = client or docker.from_env()
    for target, source in images.items():
        destination = f"{host}/{target}"
        repository, tag = parse_repository_tag(destination)
        tag = tag or "latest"
        try:
            image = client.images.pull(source)
            image.tag(repository, tag=tag)
            for chunk in client.images.push(repository, tag=tag, stream=True, decode=True):
                if "error" in chunk:
                    raise ImageCopyError(source, destination, chunk["error"])
        except docker.errors.DockerException as e:
            raise ImageCopyError(source, destination, str(e)) from e
        logger.info(f"copied {source} to local mirror {destination}")


def config_with_mirror(mirror: str) -> Path:
    """Write a daemon config that uses mirror for docker.io.

    Returns:
        Fresh temp directory containing the config file

    Raises:
        MirrorError: If the directory or file cannot be written
    """
    try:
        tmpdir = Path(tempfile.mkdtemp(prefix="boxmatrix_config"))
        os.chmod(tmpdir, 0o711)
        config_file = tmpdir / MirrorPaths.CONFIG_FILE_NAME
        config_file.write_text(f'\n[registry."docker.io"]\nmirrors=["{mirror}"]\n')
        os.chmod(config_file, 0o644)
    except OSError as e:
        raise MirrorError(f"Failed to write mirror config: {e}") from e
    return tmpdir


class MirrorHandle:
    """One reference on the mirror. Call it (or release()) exactly once."""

    def __init__(self, manager: "MirrorManager", address: str):
        self._manager = manager
        self.address = address
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._manager.release()

    __call__ = release

    def __enter__(self) -> str:
        return self.address

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class MirrorManager:
    """Reference-counted owner of the shared registry mirror.

    The first acquire() provisions and seeds the mirror; later ones only
    bump the count. Acquirers arriving during provisioning wait for it.
    The release that drops the count to zero tears the mirror down.

    Args:
        mirror_dir: Shared directory for cross-process coordination
        provision: Starts the registry, returns (address, cleanup)
        populate: Seeds a freshly started registry at address
        lease_factory: Builds the cross-process lease for a lock path
    """

    def __init__(
        self,
        mirror_dir: Optional[Path] = None,
        provision: Optional[ProvisionFunc] = None,
        populate: Optional[PopulateFunc] = None,
        lease_factory: Callable[[Path], FileLease] = FileLease,
    ):
        self.mirror_dir = Path(mirror_dir) if mirror_dir else None
        self._provision = provision or new_registry
        self._populate = populate or partial(_populate_default, images=offline_images())
        self._lease_factory = lease_factory

        self._lock = threading.Lock()
        self._refcount = 0
        self._address: Optional[str] = None
        self._cleanup: Optional[Callable[[], None]] = None

    @classmethod
    def from_config(cls, config) -> "MirrorManager":
        """Build a manager from a MatrixConfig."""
        images = offline_images()
        images.update(config.extra_images)
        return cls(
            mirror_dir=config.mirror_dir,
            provision=partial(new_registry, image=config.registry_image or REGISTRY_IMAGE),
            populate=partial(_populate_default, images=images),
        )

    @property
    def refcount(self) -> int:
        return self._refcount

    @property
    def running(self) -> bool:
        return self._refcount > 0

    @property
    def address(self) -> str:
        address = self._address
        if address is None:
            raise MirrorNotRunningError()
        return address

    def acquire(self) -> MirrorHandle:
        """Take a reference, starting the mirror if nobody holds one.

        Raises:
            MirrorError: If provisioning fails. The count is left unchanged.
        """
        with self._lock:
            if self._refcount == 0:
                self._address, self._cleanup = self._start()
            self._refcount += 1
            logger.debug(f"Mirror acquired (refs={self._refcount})")
            return MirrorHandle(self, self._address)

    def release(self) -> None:
        """Drop a reference, tearing the mirror down on the last one.

        Raises:
            MirrorError: If teardown fails. The mirror counts as gone anyway.
        """
        with self._lock:
            if self._refcount == 0:
                logger.warning("Mirror released more times than acquired")
                return
            self._refcount -= 1
            logger.debug(f"Mirror released (refs={self._refcount})")
            if self._refcount > 0:
                return

            cleanup, address = self._cleanup, self._address
            self._cleanup = None
            self._address = None
            logger.debug(f"Tearing down mirror {address}")
            try:
                cleanup()
            except Exception as e:
                logger.error("Failed to tear down mirror", exc=e)
                raise MirrorError(f"Failed to tear down mirror {address}: {e}") from e

    def _start(self) -> Tuple[str, Callable[[], None]]:
        lease = None
        if self.mirror_dir is not None:
            try:
                self.mirror_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise LeaseError(f"Cannot create mirror dir {self.mirror_dir}: {e}") from e
            lease = self._lease_factory(MirrorPaths.lock_file(self.mirror_dir))
            lease.acquire()

        try:
            address, cleanup = self._provision(self.mirror_dir)
            try:
                self._populate(address)
                if lease is not None:
                    lease.release()
            except BaseException:
                cleanup()
                raise
        finally:
            if lease is not None and lease.held:
                lease.release()

        logger.success(f"Registry mirror ready at {address}")
        return address, cleanup


def _populate_default(address: str, images: Mapping[str, str]) -> None:
    copy_images_local(address, images)
