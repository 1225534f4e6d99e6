# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Feature matrix expansion.

A feature matrix maps a feature name to its choices, each choice being a
name and an opaque value:

    {"driver": {"overlay": "overlayfs", "native": "native"},
     "network": {"host": "host", "cni": "cni"}}

expand() turns it into every combination, one MatrixValue per combination.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping

FeatureMatrix = Mapping[str, Mapping[str, Any]]


@dataclass(frozen=True)
class MatrixChoice:
    """The selected choice for one feature."""

    name: str
    value: Any


@dataclass(frozen=True, eq=False)
class MatrixValue:
    """One combination of feature choices, one choice per feature."""

    choices: Mapping[str, MatrixChoice] = field(default_factory=dict)

    def __post_init__(self):
        # Freeze the mapping so a value can be shared by concurrent leaves
        object.__setattr__(self, "choices", MappingProxyType(dict(self.choices)))

    @property
    def dimensions(self) -> FrozenSet[str]:
        return frozenset(self.choices)

    def with_choice(self, feature: str, name: str, value: Any) -> "MatrixValue":
        """Return a new value extended with one more feature choice."""
        choices = dict(self.choices)
        choices[feature] = MatrixChoice(name=name, value=value)
        return MatrixValue(choices)

    def value(self, feature: str, default: Any = None) -> Any:
        """Return the opaque value chosen for a feature."""
        choice = self.choices.get(feature)
        if choice is None:
            return default
        return choice.value

    def choice_name(self, feature: str) -> str:
        return self.choices[feature].name

    def function_suffix(self) -> str:
        """Render the combination as a leaf name suffix.

        Features are sorted so the same combination always renders the
        same suffix: "/driver=overlay/network=host".
        """
        return "".join(
            f"/{feature}={self.choices[feature].name}" for feature in sorted(self.choices)
        )

    def as_dict(self) -> Dict[str, str]:
        """Feature name to choice name, for display and logging."""
        return {feature: self.choices[feature].name for feature in sorted(self.choices)}

    def __hash__(self):
        return hash(tuple(sorted((k, v.name) for k, v in self.choices.items())))

    def __eq__(self, other):
        if not isinstance(other, MatrixValue):
            return NotImplemented
        return self.as_dict() == other.as_dict()


def expand(features: FeatureMatrix) -> List[MatrixValue]:
    """Expand a feature matrix into the cartesian product of its choices.

    An empty matrix yields a single empty MatrixValue so callers always get
    at least the default combination.

    Args:
        features: Feature name to {choice name: value}

    Returns:
        List of MatrixValue, one per combination
    """
    combinations = [MatrixValue()]
    for feature, choices in features.items():
        combinations = [
            partial.with_choice(feature, name, value)
            for partial in combinations
            for name, value in choices.items()
        ]
    return combinations
