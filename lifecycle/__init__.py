"""
Scenario Lifecycle

Apply -> validate -> destroy orchestration with guaranteed teardown,
parallel coordination and leak tracking.
"""

__version__ = "1.0.0"

from .coordinator import RunReport, TestRunCoordinator
from .ledger import LeakEntry, LeakLedger, LeakStatus
from .orchestrator import (
    ErrorRecord,
    LifecycleOrchestrator,
    ResourceGuard,
    ScenarioResult,
    ScenarioState,
    ScenarioTimeoutError,
    Severity,
)

__all__ = [
    "RunReport",
    "TestRunCoordinator",
    "LeakEntry",
    "LeakLedger",
    "LeakStatus",
    "ErrorRecord",
    "LifecycleOrchestrator",
    "ResourceGuard",
    "ScenarioResult",
    "ScenarioState",
    "ScenarioTimeoutError",
    "Severity",
]
