# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Exclusive advisory lease over a filesystem path.

Used to serialize mirror provisioning between independent processes that
share a mirror directory. The lease blocks until it is granted and is held
only while the holder keeps it open.
"""

import contextlib
import fcntl
from pathlib import Path
from typing import IO, Optional

from boxmatrix.errors import LeaseError
from boxmatrix.utils.logging import get_logger

logger = get_logger(__name__)


class FileLease:
    """Blocking exclusive flock on a lock file.

    Usage:
        lease = FileLease(MirrorPaths.lock_file(mirror_dir))
        lease.acquire()
        try:
            ...  # provision
        finally:
            lease.release()
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        """Take the lease, waiting for other holders to release it.

        Raises:
            LeaseError: If the lock file cannot be created or locked
        """
        if self._handle is not None:
            raise LeaseError(f"Lease already held: {self.path}")

        try:
            handle = open(self.path, "a+", encoding="utf-8")
        except OSError as e:
            raise LeaseError(f"Cannot open lock file {self.path}: {e}") from e

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            logger.info(f"Waiting for mirror lock at {self.path}")
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            except OSError as e:
                handle.close()
                raise LeaseError(f"Cannot lock {self.path}: {e}") from e
        except OSError as e:
            handle.close()
            raise LeaseError(f"Cannot lock {self.path}: {e}") from e

        self._handle = handle
        logger.debug(f"Lease acquired: {self.path}")

    def release(self) -> None:
        """Drop the lease. Releasing a lease that is not held is a no-op.

        Raises:
            LeaseError: If unlocking fails (the file is closed regardless)
        """
        handle = self._handle
        self._handle = None
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise LeaseError(f"Cannot unlock {self.path}: {e}") from e
        finally:
            with contextlib.suppress(OSError):
                handle.close()
        logger.debug(f"Lease released: {self.path}")

    def __enter__(self) -> "FileLease":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
