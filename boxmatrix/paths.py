# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Centralized path definitions for boxmatrix.

Paths are organized by context:

- HostPaths: Paths on the host machine (where the runner executes)
- SandboxPaths: Paths inside a sandbox container
- MirrorPaths: Paths relative to a shared registry mirror directory

Usage:
    from boxmatrix.paths import HostPaths, MirrorPaths

    config_file = HostPaths.config_file()
    lock = MirrorPaths.lock_file(mirror_dir)
"""

import os
from pathlib import Path


class HostPaths:
    """Paths on the host machine where boxmatrix runs."""

    @staticmethod
    def config_dir() -> Path:
        """~/.config/boxmatrix/"""
        return Path.home() / ".config" / "boxmatrix"

    @staticmethod
    def config_file() -> Path:
        """~/.config/boxmatrix/config.yml"""
        return HostPaths.config_dir() / "config.yml"

    @staticmethod
    def data_dir() -> Path:
        """~/.local/share/boxmatrix/"""
        xdg = os.getenv("XDG_DATA_HOME")
        if xdg:
            return Path(xdg) / "boxmatrix"
        return Path.home() / ".local" / "share" / "boxmatrix"

    @staticmethod
    def log_dir() -> Path:
        """~/.local/share/boxmatrix/logs/"""
        return HostPaths.data_dir() / "logs"

    # Docker socket
    DOCKER_SOCKET = "/var/run/docker.sock"


class SandboxPaths:
    """Paths inside a sandbox container."""

    # Mirror configuration mount point (read-only from host)
    CONFIG_DIR = "/etc/boxmatrix"

    # Registry port inside the registry container
    REGISTRY_PORT = "5000/tcp"

    # Storage root of the registry image
    REGISTRY_STORAGE = "/var/lib/registry"


class MirrorPaths:
    """Paths relative to a shared registry mirror directory.

    The mirror directory is shared by every process on the host that sets
    BOXMATRIX_REGISTRY_MIRROR_DIR to the same value.
    """

    CONFIG_FILE_NAME = "buildkitd.toml"

    @staticmethod
    def lock_file(mirror_dir: Path) -> Path:
        """<mirror_dir>/lock"""
        return Path(mirror_dir) / "lock"

    @staticmethod
    def storage_dir(mirror_dir: Path) -> Path:
        """<mirror_dir>/registry - persistent registry storage."""
        return Path(mirror_dir) / "registry"
