"""
Contract Validation

Compares provisioned outputs and live state against expectations.
"""

from .contract import (
    Expectation,
    OutputContractValidator,
    StateValidator,
    Violation,
    ViolationKind,
)

__all__ = [
    "Expectation",
    "OutputContractValidator",
    "StateValidator",
    "Violation",
    "ViolationKind",
]
