# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Worker registry.

Workers are registered explicitly by the host program:

    registry = WorkerRegistry()
    registry.register(DockerWorker())
    run(tests, workers=registry.list())
"""

import threading
from typing import List

from boxmatrix.sandbox import Worker


class WorkerRegistry:
    """Ordered list of registered workers. Names must be unique."""

    def __init__(self):
        self._workers: List[Worker] = []
        self._lock = threading.Lock()

    def register(self, worker: Worker) -> None:
        with self._lock:
            if any(w.name == worker.name for w in self._workers):
                raise ValueError(f"Worker already registered: {worker.name}")
            self._workers.append(worker)

    def list(self) -> List[Worker]:
        """Snapshot of the registered workers in registration order."""
        with self._lock:
            return list(self._workers)

    def __len__(self) -> int:
        return len(self._workers)


# Registry used by the CLI when a suite does not bring its own workers
default_registry = WorkerRegistry()


def register(worker: Worker) -> None:
    default_registry.register(worker)


def list_workers() -> List[Worker]:
    return default_registry.list()
