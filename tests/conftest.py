# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Pytest fixtures for boxmatrix tests.

Docker is never contacted: workers, registries and the mirror hooks are
replaced by the in-memory fakes from fakes.py or by mocks.
"""

import pytest

from boxmatrix.config import reset_config
from boxmatrix.mirror import MirrorManager

from fakes import FakeWorker, MirrorRecorder


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Point HOME at a temp dir and drop boxmatrix env overrides."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for var in (
        "BOXMATRIX_REGISTRY_MIRROR_DIR",
        "BOXMATRIX_SHORT",
        "BOXMATRIX_PARALLEL",
    ):
        # setenv first so anything the code under test sets is undone too
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def recorder():
    return MirrorRecorder()


@pytest.fixture
def mirror(recorder):
    """MirrorManager whose registry is the recorder."""
    return MirrorManager(provision=recorder.provision, populate=recorder.populate)


@pytest.fixture
def worker():
    return FakeWorker("W")
