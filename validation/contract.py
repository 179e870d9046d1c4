"""
Output and State Contract Validation

Compares module outputs and live resource properties against declared
expectations. Comparison is structural and string-based: identifiers are
never interpreted beyond substring containment.

Every expectation is evaluated; violations are collected in one pass and
reported in expectation order.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


def is_empty(value: Any) -> bool:
    """True for None, empty strings and empty collections. False and 0 are values."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


class ViolationKind(str, Enum):
    """Kinds of detected mismatch."""
    MISSING_OUTPUT = "missing_output"        # Output absent or empty
    SHAPE_MISMATCH = "shape_mismatch"        # Prefix/containment constraint failed
    VALUE_MISMATCH = "value_mismatch"        # Output differs from exact expected value
    MISSING_PROPERTY = "missing_property"    # Live property absent or empty
    STATE_MISMATCH = "state_mismatch"        # Live property constraint failed
    READ_TIMEOUT = "read_timeout"            # Live state not visible in time
    VALIDATION_ERROR = "validation_error"    # Validation step itself faulted


class Expectation(BaseModel):
    """
    A declared post-condition on one output key or live property.

    Usage:
        Expectation(key="api_management_gateway_url", starts_with="https://")
        Expectation(key="product_ids", contains=["starter"])
        Expectation(key="publisher_name", equals="Test Publisher")
    """
    model_config = ConfigDict(frozen=True)

    key: str
    non_empty: bool = True
    starts_with: str | None = None
    contains: list[Any] = Field(default_factory=list)
    equals: Any = None
    description: str = ""

    @property
    def checks_equality(self) -> bool:
        # equals=None is a legitimate expected value when set explicitly
        return "equals" in self.model_fields_set


@dataclass
class Violation:
    """A single mismatch between expected and actual."""
    key: str
    kind: ViolationKind
    message: str
    expected: Any = None
    actual: Any = None

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "kind": self.kind.value,
            "message": self.message,
            "expected": self.expected,
            "actual": self.actual,
        }


def _contains(value: Any, item: Any) -> bool | None:
    """Containment by value type; None when the type does not support it."""
    if isinstance(value, str):
        return str(item) in value
    if isinstance(value, Mapping):
        return item in value
    if isinstance(value, (list, tuple, set)):
        return item in value
    return None


def check_expectation(
    expectation: Expectation,
    actual: Any,
    present: bool,
    missing_kind: ViolationKind,
    shape_kind: ViolationKind,
    value_kind: ViolationKind
) -> list[Violation]:
    """Evaluate every constraint of one expectation against one value."""
    key = expectation.key

    if not present:
        return [Violation(key, missing_kind, f"{key} is absent")]
    if expectation.non_empty and is_empty(actual):
        return [Violation(key, missing_kind, f"{key} is empty", actual=actual)]

    violations = []

    if expectation.starts_with is not None:
        if not isinstance(actual, str) or not actual.startswith(expectation.starts_with):
            violations.append(Violation(
                key, shape_kind,
                f"{key} must start with {expectation.starts_with!r}",
                expected=expectation.starts_with,
                actual=actual
            ))

    for item in expectation.contains:
        found = _contains(actual, item)
        if found is None:
            violations.append(Violation(
                key, shape_kind,
                f"{key} of type {type(actual).__name__} cannot contain {item!r}",
                expected=item,
                actual=actual
            ))
        elif not found:
            violations.append(Violation(
                key, shape_kind,
                f"{key} must contain {item!r}",
                expected=item,
                actual=actual
            ))

    if expectation.checks_equality and actual != expectation.equals:
        violations.append(Violation(
            key, value_kind,
            f"{key} must equal {expectation.equals!r}, got {actual!r}",
            expected=expectation.equals,
            actual=actual
        ))

    return violations


class OutputContractValidator:
    """
    Validates a module's exported outputs.

    Usage:
        validator = OutputContractValidator()
        violations = validator.validate(outputs, scenario.expected_outputs)
    """

    def validate(
        self,
        outputs: Mapping[str, Any],
        expectations: list[Expectation]
    ) -> list[Violation]:
        violations = []
        for expectation in expectations:
            violations.extend(check_expectation(
                expectation,
                outputs.get(expectation.key),
                expectation.key in outputs,
                missing_kind=ViolationKind.MISSING_OUTPUT,
                shape_kind=ViolationKind.SHAPE_MISMATCH,
                value_kind=ViolationKind.VALUE_MISMATCH
            ))

        if violations:
            logger.warning(f"Output contract: {len(violations)} violation(s)")
        return violations


class StateValidator:
    """Validates properties of a live resource snapshot."""

    def validate(
        self,
        snapshot: Mapping[str, Any],
        expectations: list[Expectation]
    ) -> list[Violation]:
        violations = []
        for expectation in expectations:
            violations.extend(check_expectation(
                expectation,
                snapshot.get(expectation.key),
                expectation.key in snapshot,
                missing_kind=ViolationKind.MISSING_PROPERTY,
                shape_kind=ViolationKind.STATE_MISMATCH,
                value_kind=ViolationKind.STATE_MISMATCH
            ))

        if violations:
            logger.warning(f"Live state: {len(violations)} violation(s)")
        return violations
