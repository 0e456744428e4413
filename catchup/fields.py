"""Pydantic field validators for unit-aware configurations.

Provides field validators that parse user-friendly unit inputs
and convert them to canonical floats with metadata.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Sequence

import numpy as np

from .units import UnitManager, UnitSpec


def quantity_field(
    dimension: str,
    default_unit: Optional[str] = None,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
) -> Callable:
    """Create a Pydantic field validator for quantity inputs.

    This validator accepts strings, numbers, or pint Quantities and
    converts them to canonical floats with metadata.

    Args:
        dimension: Expected physical dimension (e.g., "time", "1/time")
        default_unit: Unit to apply to bare numbers
        min_value: Optional minimum value (inclusive, canonical units)
        max_value: Optional maximum value (inclusive, canonical units)

    Returns:
        Field validator function for Pydantic models

    Example:
        class MyConfig(BaseModel):
            drift: Tuple[float, UnitSpec]

            _validate_drift = field_validator("drift", mode="before")(
                quantity_field("1/time", "1/second")
            )
    """
    def validator(value: Any, info: Optional[Any] = None) -> tuple[float, UnitSpec]:
        """Validate and convert quantity input.

        Args:
            value: Input value to validate
            info: Pydantic validation info (unused but required by signature)

        Returns:
            Tuple of (canonical_float, unit_spec)

        Raises:
            ValueError: If validation fails
        """
        # Already-validated values pass through (model_copy, re-validation)
        if isinstance(value, tuple) and len(value) == 2 and isinstance(value[1], UnitSpec):
            canonical_value, spec = float(value[0]), value[1]
        else:
            manager = UnitManager.instance()

            try:
                quantity = manager.ensure_quantity(value, default_unit)
            except Exception as e:
                raise ValueError(f"Cannot parse quantity: {e}")

            try:
                canonical_value, spec = manager.to_canonical(quantity, dimension)
            except ValueError as e:
                raise ValueError(f"Dimension mismatch: {e}")

        if not np.isfinite(canonical_value):
            raise ValueError(f"Value must be finite, got {canonical_value}")
        if min_value is not None and canonical_value < min_value:
            raise ValueError(
                f"Value {canonical_value} below minimum {min_value} "
                f"(in canonical {dimension} units)"
            )
        if max_value is not None and canonical_value > max_value:
            raise ValueError(
                f"Value {canonical_value} above maximum {max_value} "
                f"(in canonical {dimension} units)"
            )

        return canonical_value, spec

    return validator


def sequence_quantity_field(
    dimension: str,
    default_unit: Optional[str] = None,
    strictly_increasing: bool = False,
) -> Callable:
    """Create a validator for ordered sequences of quantities (e.g., time grids).

    Each element can be a string, number, or pint Quantity; elements may
    use different units of the same dimension.

    Args:
        dimension: Expected physical dimension of every element
        default_unit: Unit to apply to bare numbers
        strictly_increasing: Reject sequences that do not strictly increase

    Returns:
        Field validator returning (tuple_of_canonical_floats, unit_spec),
        where unit_spec describes the first element.

    Example:
        class MyConfig(BaseModel):
            save_times: Tuple[Tuple[float, ...], UnitSpec]

            _validate_save_times = field_validator("save_times", mode="before")(
                sequence_quantity_field("time", "second", strictly_increasing=True)
            )
    """
    base_validator = quantity_field(dimension, default_unit)

    def validator(
        value: Any, info: Optional[Any] = None
    ) -> tuple[tuple[float, ...], UnitSpec]:
        if (isinstance(value, tuple) and len(value) == 2
                and isinstance(value[1], UnitSpec)
                and isinstance(value[0], (tuple, list))):
            values, spec = tuple(float(v) for v in value[0]), value[1]
        else:
            if isinstance(value, (str, bytes)) or not isinstance(value, (Sequence, np.ndarray)):
                raise ValueError(f"Expected a sequence of {dimension} values, got {value!r}")

            converted = [base_validator(element, info) for element in value]
            if not converted:
                raise ValueError("Sequence must not be empty")

            values = tuple(v for v, _ in converted)
            spec = converted[0][1]

        if strictly_increasing:
            diffs = np.diff(np.asarray(values, dtype=float))
            if np.any(diffs <= 0):
                bad = int(np.argmax(diffs <= 0))
                raise ValueError(
                    f"Sequence must be strictly increasing; element {bad + 1} "
                    f"({values[bad + 1]}) does not exceed element {bad} ({values[bad]}) "
                    f"(in canonical {dimension} units)"
                )

        return values, spec

    return validator
