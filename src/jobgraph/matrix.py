# matrix.py
from __future__ import annotations

import itertools
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError
from .model import MatrixSpec


def validate_matrix(spec: Optional[MatrixSpec], *, job: str = "<job>") -> None:
    """
    Reject matrices that cannot be expanded faithfully:
      - an axis with no values (or values that are not a list)
      - an exclusion naming an axis that is not declared
      - an exclusion naming a value its axis does not declare
    """
    if spec is None:
        return

    for axis, values in spec.axes.items():
        if not isinstance(values, tuple):
            raise ConfigurationError(
                f"Job '{job}': matrix axis '{axis}' must be a list of values, got {type(values).__name__}"
            )
        if not values:
            raise ConfigurationError(f"Job '{job}': matrix axis '{axis}' has no values")

    for idx, excluded in enumerate(spec.exclude):
        if not isinstance(excluded, Mapping) or not excluded:
            raise ConfigurationError(f"Job '{job}': matrix exclude[{idx}] must be a non-empty mapping")
        for axis, value in excluded.items():
            if axis not in spec.axes:
                raise ConfigurationError(
                    f"Job '{job}': matrix exclude[{idx}] references undeclared axis '{axis}'. "
                    f"Declared axes: {list(spec.axes)}"
                )
            if value not in spec.axes[axis]:
                raise ConfigurationError(
                    f"Job '{job}': matrix exclude[{idx}] value {value!r} is not declared on axis '{axis}'"
                )


def _matches(assignment: Dict[str, Any], excluded: Mapping) -> bool:
    # partial match: every axis named by the exclusion agrees
    return all(assignment.get(axis) == value for axis, value in excluded.items())


def expand(spec: Optional[MatrixSpec]) -> List[Dict[str, Any]]:
    """
    Materialize concrete assignments for a matrix.

    Order is the product order of axis declaration order then within-axis
    value order. An empty matrix yields exactly one (empty) assignment.
    """
    if spec is None or spec.is_empty:
        return [{}]

    validate_matrix(spec)

    axes = list(spec.axes.keys())
    out: List[Dict[str, Any]] = []
    for combo in itertools.product(*(spec.axes[a] for a in axes)):
        assignment = dict(zip(axes, combo))
        if any(_matches(assignment, ex) for ex in spec.exclude):
            continue
        out.append(assignment)
    return out


def instance_label(job: str, assignment: Dict[str, Any]) -> str:
    """build, test (a, 18), ..."""
    if not assignment:
        return job
    values = ", ".join(str(v) for v in assignment.values())
    return f"{job} ({values})"
