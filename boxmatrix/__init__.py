# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""boxmatrix - Run integration tests across every worker and feature combination."""

__version__ = "0.1.0"
