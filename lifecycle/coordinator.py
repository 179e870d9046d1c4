"""
Test Run Coordinator

Runs many scenarios concurrently, each in its own namespace (unique
identity, private workspace), and aggregates a pass/fail report. One
scenario failing never stops the others from running or being torn down.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from scenarios.definition import ConfigValidationError, ScenarioDefinition, ScenarioTemplate
from scenarios.identity import IdentityError, allocate

from .orchestrator import LifecycleOrchestrator, ScenarioResult, ScenarioState

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """Aggregate result of a test run."""
    started_at: datetime
    ended_at: datetime | None = None
    results: list[ScenarioResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return bool(self.results) and all(r.passed for r in self.results)

    @property
    def leaked(self) -> list[ScenarioResult]:
        return [r for r in self.results if r.leaked]

    def summary(self) -> dict[str, Any]:
        passed = sum(1 for r in self.results if r.passed)
        return {
            "total": len(self.results),
            "passed": passed,
            "failed": len(self.results) - passed,
            "leaked": len(self.leaked),
            "status": "passed" if self.passed else "failed",
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON export."""
        return {
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            **self.summary(),
            "scenarios": [r.to_dict() for r in self.results],
        }

    def export_json(self, path: str | Path) -> Path:
        """Write the report as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
        logger.info(f"Report written to {path}")
        return path


class TestRunCoordinator:
    """
    Runs scenarios in parallel through a LifecycleOrchestrator.

    Usage:
        coordinator = TestRunCoordinator(orchestrator, max_parallel=3)
        report = await coordinator.run([get_scenario("basic"), get_scenario("vnet")])
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        orchestrator: LifecycleOrchestrator,
        max_parallel: int = 4,
        allocate_identity: Callable[[str], str] = allocate
    ):
        self.orchestrator = orchestrator
        self.max_parallel = max_parallel
        self.allocate_identity = allocate_identity

    def _rejected(self, name: str, identity: str, error: Exception) -> ScenarioResult:
        logger.error(f"Scenario {name} rejected: {error}")
        result = ScenarioResult(scenario_name=name, identity=identity)
        result.add_error("config_error", str(error))
        result.transition(ScenarioState.REJECTED)
        result.ended_at = datetime.now()
        return result

    async def _run_one(
        self,
        item: ScenarioTemplate | ScenarioDefinition,
        semaphore: asyncio.Semaphore
    ) -> ScenarioResult:
        async with semaphore:
            if isinstance(item, ScenarioDefinition):
                scenario = item
            else:
                identity = ""
                try:
                    identity = self.allocate_identity(item.name_prefix)
                    scenario = item.instantiate(identity)
                except (ConfigValidationError, IdentityError) as e:
                    return self._rejected(item.name, identity, e)

            return await self.orchestrator.run(scenario)

    async def run(self, scenarios: list[ScenarioTemplate | ScenarioDefinition]) -> RunReport:
        """Run all scenarios concurrently and collect their results."""
        report = RunReport(started_at=datetime.now())
        semaphore = asyncio.Semaphore(self.max_parallel)

        logger.info(f"Running {len(scenarios)} scenario(s), max {self.max_parallel} in parallel")
        tasks = [asyncio.create_task(self._run_one(s, semaphore)) for s in scenarios]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        for item, outcome in zip(scenarios, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                # run() records scenario failures itself; this is a harness bug
                logger.error(f"Scenario {item.name} crashed: {outcome!r}")
                identity = item.identity if isinstance(item, ScenarioDefinition) else ""
                result = ScenarioResult(scenario_name=item.name, identity=identity)
                result.add_error("internal_error", repr(outcome))
                result.ended_at = datetime.now()
                outcome = result
            report.results.append(outcome)

        report.ended_at = datetime.now()
        summary = report.summary()
        logger.info(
            f"Run finished: {summary['passed']}/{summary['total']} passed, "
            f"{summary['leaked']} with possible leaks"
        )
        return report
