# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Worker and sandbox interfaces.

A Worker is a named factory for sandboxes. The runner asks it for one
sandbox per leaf, passing a SandboxConfig with the mirror address and the
leaf's matrix value. A worker that cannot honor the combination raises
RequirementsError and the leaf is skipped.
"""

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional, Tuple

from boxmatrix.matrix import MatrixValue
from boxmatrix.utils.logging import BoxmatrixLogger

ReleaseFunc = Callable[[], None]


@dataclass(frozen=True)
class SandboxConfig:
    """Configuration handed to Worker.new for a single leaf."""

    mirror: Optional[str] = None
    matrix: MatrixValue = field(default_factory=MatrixValue)


def with_mirror(config: SandboxConfig, address: str) -> SandboxConfig:
    """Return a copy of config pointing at the given mirror."""
    return replace(config, mirror=address)


def with_matrix_value(config: SandboxConfig, value: MatrixValue) -> SandboxConfig:
    """Return a copy of config selecting the given matrix combination."""
    return replace(config, matrix=value)


class Sandbox(ABC):
    """Isolated execution environment for one leaf."""

    def __init__(self, config: SandboxConfig):
        self.config = config

    @property
    @abstractmethod
    def address(self) -> str:
        """Endpoint test code uses to reach the service under test."""

    @property
    def rootless(self) -> bool:
        return False

    @abstractmethod
    def print_logs(self, logger: BoxmatrixLogger) -> None:
        """Write the sandbox's logs to the given logger."""

    @abstractmethod
    def cmd(self, *args: str, **popen_kwargs: Any) -> subprocess.Popen:
        """Start a command inside the sandbox."""

    @abstractmethod
    def new_registry(self) -> str:
        """Start a throwaway registry for this sandbox and return its address."""

    def value(self, feature: str) -> Any:
        """Return the matrix value chosen for feature in this leaf."""
        return self.config.matrix.value(feature)


class Worker(ABC):
    """Named sandbox factory, created once per process."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def new(self, config: SandboxConfig) -> Tuple[Sandbox, ReleaseFunc]:
        """Create a sandbox.

        Returns:
            The sandbox and a function that destroys it

        Raises:
            RequirementsError: If the worker cannot satisfy config.matrix
        """
