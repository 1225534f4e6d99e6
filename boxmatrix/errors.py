# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Exception classes for boxmatrix.

Setup errors (MirrorError and subclasses) stop a run before any leaf is
started. RequirementsError is turned into a skip for the leaf that raised
it. DuplicateLeafError is an authoring error in the suite definition.
"""

from typing import Optional


class BoxmatrixError(Exception):
    """Base class for all boxmatrix errors.

    The optional hint is shown under the message by the CLI.
    """

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


class MirrorError(BoxmatrixError):
    """Raised when the shared registry mirror cannot be provisioned."""


class LeaseError(MirrorError):
    """Raised when the cross-process mirror lease cannot be taken or dropped."""


class ImageCopyError(MirrorError):
    """Raised when a bootstrap image cannot be copied into the mirror."""

    def __init__(self, source: str, target: str, reason: str):
        super().__init__(
            f"Failed to copy {source} to {target}: {reason}",
            hint="Check network access to the origin registry",
        )
        self.source = source
        self.target = target


class MirrorNotRunningError(MirrorError):
    """Raised when the mirror address is read while no one holds a reference."""

    def __init__(self):
        super().__init__("Registry mirror is not running", hint="Call acquire() first")


class RequirementsError(BoxmatrixError):
    """Raised by a worker that cannot satisfy a matrix combination.

    The runner reports the leaf as skipped with this error's text.
    """


class DuplicateLeafError(BoxmatrixError):
    """Raised when two leaves of a run derive the same name."""

    def __init__(self, name: str):
        super().__init__(
            f"Duplicate test leaf: {name}",
            hint="Give each test case a unique name",
        )
        self.name = name
