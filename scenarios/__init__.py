"""
Acceptance Scenarios

Scenario definitions, the built-in suite and unique identity allocation.
"""

__version__ = "1.0.0"

from .builtin import BUILTIN_SCENARIOS, get_scenario
from .definition import (
    ConfigValidationError,
    ScenarioDefinition,
    ScenarioTemplate,
)
from .identity import IdentityError, allocate

__all__ = [
    "BUILTIN_SCENARIOS",
    "get_scenario",
    "ConfigValidationError",
    "ScenarioDefinition",
    "ScenarioTemplate",
    "IdentityError",
    "allocate",
]
