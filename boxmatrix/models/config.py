# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT

"""Pydantic models for host configuration (~/.config/boxmatrix/config.yml)."""

from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator


class MirrorConfig(BaseModel):
    """Shared registry mirror settings.

    dir: Host directory shared between processes. When set, provisioning is
         serialized with a lock file and registry storage persists there.
    images: Extra bootstrap images, target name -> origin reference.
    """

    dir: Optional[str] = None
    registry_image: str = "registry:2"
    images: Dict[str, str] = Field(default_factory=dict)


class RunConfig(BaseModel):
    """Runner settings."""

    parallel: int = 1
    short: bool = False

    @field_validator("parallel")
    @classmethod
    def validate_parallel(cls, v: int) -> int:
        if v < 1:
            raise ValueError("parallel must be at least 1")
        return v


class DockerWorkerConfig(BaseModel):
    """Settings for the built-in docker worker."""

    image: str = "alpine:latest"
    rootless: bool = False
    command: list[str] = Field(default_factory=lambda: ["sleep", "infinity"])


class MatrixConfigModel(BaseModel):
    """Root configuration model."""

    version: str = "1.0"
    mirror: MirrorConfig = Field(default_factory=MirrorConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    docker: DockerWorkerConfig = Field(default_factory=DockerWorkerConfig)
