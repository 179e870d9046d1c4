"""
Lifecycle Orchestrator

Drives one scenario through apply -> validate -> destroy.

States:
    PENDING -> APPLYING -> APPLIED -> VALIDATING -> VALIDATED | FAILED
            -> DESTROYING -> DESTROYED | LEAKED | ABANDONED_PARTIAL

A failed apply goes straight from APPLYING to DESTROYING. Destroy runs
exactly once for every prepared workspace, whatever happened before it:
validation failure, a fault in the validation step, a timeout or task
cancellation.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from scenarios.definition import ScenarioDefinition
from provisioning.settings import HarnessSettings, DEFAULT_SETTINGS
from provisioning.state_reader import ReadTimeoutError, ResourceSnapshot
from provisioning.terraform import ApplyError, OutputSet, ProvisionedResourceHandle, TerraformError
from validation.contract import OutputContractValidator, StateValidator, Violation, ViolationKind

from .ledger import LeakLedger, LeakStatus

logger = logging.getLogger(__name__)


class ScenarioState(str, Enum):
    """Lifecycle states of one scenario."""
    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    VALIDATING = "validating"
    VALIDATED = "validated"
    FAILED = "failed"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    LEAKED = "leaked"                        # Destroy failed
    ABANDONED_PARTIAL = "abandoned_partial"  # Interrupted before destroy completed
    REJECTED = "rejected"                    # Invalid configuration, never provisioned


class Severity(str, Enum):
    ERROR = "error"
    CRITICAL = "critical"  # Possible resource leak


class ScenarioTimeoutError(TimeoutError):
    """The scenario exceeded its overall time bound."""
    pass


class ProvisioningBackend(Protocol):
    async def prepare(self, scenario: ScenarioDefinition) -> ProvisionedResourceHandle: ...
    async def apply(self, handle: ProvisionedResourceHandle) -> OutputSet: ...
    async def destroy(self, handle: ProvisionedResourceHandle) -> None: ...


class StateReader(Protocol):
    async def read(self, resource_name: str, resource_group: str) -> ResourceSnapshot: ...


@dataclass
class ErrorRecord:
    """An error encountered while running a scenario."""
    kind: str
    message: str
    severity: Severity = Severity.ERROR

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "severity": self.severity.value}


@dataclass
class ScenarioResult:
    """Outcome of one scenario run."""
    scenario_name: str
    identity: str
    state: ScenarioState = ScenarioState.PENDING
    started_at: datetime = field(default_factory=datetime.now)
    ended_at: datetime | None = None
    transitions: list[tuple[ScenarioState, datetime]] = field(default_factory=list)
    violations: list[Violation] = field(default_factory=list)
    errors: list[ErrorRecord] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    snapshot: dict[str, Any] | None = None

    def __post_init__(self):
        if not self.transitions:
            self.transitions.append((self.state, self.started_at))

    def transition(self, state: ScenarioState) -> None:
        logger.info(f"{self.scenario_name} [{self.identity}]: {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append((state, datetime.now()))

    def add_error(self, kind: str, message: str, severity: Severity = Severity.ERROR) -> None:
        self.errors.append(ErrorRecord(kind, message, severity))

    def visited(self, state: ScenarioState) -> bool:
        return any(s == state for s, _ in self.transitions)

    @property
    def validated(self) -> bool:
        return self.visited(ScenarioState.VALIDATED)

    @property
    def passed(self) -> bool:
        return self.validated and self.state == ScenarioState.DESTROYED and not self.errors

    @property
    def leaked(self) -> bool:
        return self.state in (ScenarioState.LEAKED, ScenarioState.ABANDONED_PARTIAL)

    @property
    def duration_seconds(self) -> float:
        end = self.ended_at or datetime.now()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON export."""
        return {
            "scenario_name": self.scenario_name,
            "identity": self.identity,
            "state": self.state.value,
            "passed": self.passed,
            "leaked": self.leaked,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "transitions": [
                {"state": s.value, "at": t.isoformat()} for s, t in self.transitions
            ],
            "violations": [v.to_dict() for v in self.violations],
            "errors": [e.to_dict() for e in self.errors],
            "outputs": self.outputs,
            "snapshot": self.snapshot,
        }


# =============================================================================
# Scoped Resource Ownership
# =============================================================================

class ResourceGuard:
    """
    Owns a scenario's provisioned workspace for the duration of a block.

    The workspace is prepared on entry and destroyed exactly once on exit,
    however the block is left.

    Usage:
        async with ResourceGuard(backend, scenario, result, ledger) as guard:
            outputs = await backend.apply(guard.handle)
    """

    def __init__(
        self,
        backend: ProvisioningBackend,
        scenario: ScenarioDefinition,
        result: ScenarioResult,
        ledger: LeakLedger
    ):
        self.backend = backend
        self.scenario = scenario
        self.result = result
        self.ledger = ledger
        self.handle: ProvisionedResourceHandle | None = None
        self._released = False

    async def __aenter__(self):
        self.handle = await self.backend.prepare(self.scenario)
        self._update_ledger(self.ledger.record, self.handle)
        return self

    def _update_ledger(self, op, *args) -> None:
        # The handle is owned from here on; a ledger failure must not skip destroy
        try:
            op(*args)
        except OSError as e:
            logger.error(f"Leak ledger update failed for {self.handle.identity}: {e}")

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
        return False

    async def release(self) -> None:
        """Destroy the workspace's resources. Idempotent."""
        if self._released or self.handle is None:
            return
        self._released = True

        result = self.result
        result.transition(ScenarioState.DESTROYING)
        try:
            await self.backend.destroy(self.handle)
        except asyncio.CancelledError:
            message = "interrupted during destroy, resources may still exist"
            logger.critical(f"{result.scenario_name} [{result.identity}]: {message}")
            result.add_error("abandoned", message, Severity.CRITICAL)
            self._update_ledger(self.ledger.mark, self.handle, LeakStatus.ABANDONED, message)
            result.transition(ScenarioState.ABANDONED_PARTIAL)
            raise
        except Exception as e:
            detail = e.stderr_tail if isinstance(e, TerraformError) and e.stderr else ""
            message = f"destroy failed, resources may have leaked: {e}"
            if detail:
                message = f"{message}\n{detail}"
            logger.critical(f"{result.scenario_name} [{result.identity}]: {message}")
            result.add_error("destroy_error", message, Severity.CRITICAL)
            self._update_ledger(self.ledger.mark, self.handle, LeakStatus.LEAKED, str(e))
            result.transition(ScenarioState.LEAKED)
            return

        self._update_ledger(self.ledger.resolve, self.handle)
        result.transition(ScenarioState.DESTROYED)


# =============================================================================
# Orchestrator
# =============================================================================

class LifecycleOrchestrator:
    """
    Runs scenarios through apply, validate and destroy.

    Usage:
        orchestrator = LifecycleOrchestrator(backend, reader, settings)
        result = await orchestrator.run(scenario)

    run() never raises for scenario failures; everything is recorded on the
    returned ScenarioResult. Only task cancellation propagates, after
    destroy has been attempted.
    """

    def __init__(
        self,
        backend: ProvisioningBackend,
        state_reader: StateReader | None = None,
        settings: HarnessSettings = DEFAULT_SETTINGS,
        ledger: LeakLedger | None = None
    ):
        self.backend = backend
        self.state_reader = state_reader
        self.settings = settings
        self.ledger = ledger or LeakLedger()
        self.output_validator = OutputContractValidator()
        self.state_validator = StateValidator()

    async def run(self, scenario: ScenarioDefinition) -> ScenarioResult:
        result = ScenarioResult(scenario_name=scenario.name, identity=scenario.identity)
        timeout = scenario.timeout_seconds or self.settings.scenario_timeout_seconds
        timed_out_in: ScenarioState | None = None

        logger.info(f"Starting scenario: {scenario.name} [{scenario.identity}]")
        result.transition(ScenarioState.APPLYING)
        guard = ResourceGuard(self.backend, scenario, result, self.ledger)

        try:
            async with guard:
                try:
                    await asyncio.wait_for(
                        self._apply_and_validate(guard.handle, scenario, result),
                        timeout=timeout
                    )
                except asyncio.TimeoutError:
                    timed_out_in = result.state
                    if result.state == ScenarioState.VALIDATING:
                        result.transition(ScenarioState.FAILED)
                except Exception as e:
                    logger.exception(f"Scenario {scenario.name} faulted: {e}")
                    result.add_error("internal_error", f"{type(e).__name__}: {e}")
                    if result.state in (ScenarioState.APPLIED, ScenarioState.VALIDATING):
                        result.transition(ScenarioState.FAILED)
        except Exception as e:
            # Workspace could not be prepared; nothing was provisioned
            logger.error(f"Scenario {scenario.name}: prepare failed: {e}")
            result.add_error("apply_error", f"prepare failed: {e}")
            result.transition(ScenarioState.DESTROYING)
            result.transition(ScenarioState.DESTROYED)
        finally:
            result.ended_at = datetime.now()

        # Reported only after destroy has run
        if timed_out_in is not None:
            error = ScenarioTimeoutError(
                f"scenario exceeded {timeout}s while {timed_out_in.value}"
            )
            logger.error(f"Scenario {scenario.name}: {error}")
            result.add_error("scenario_timeout", str(error))

        logger.info(
            f"Scenario {scenario.name}: "
            f"{'PASSED' if result.passed else 'FAILED'} ({result.state.value}, "
            f"{len(result.violations)} violation(s), {len(result.errors)} error(s))"
        )
        return result

    async def _apply_and_validate(
        self,
        handle: ProvisionedResourceHandle,
        scenario: ScenarioDefinition,
        result: ScenarioResult
    ) -> None:
        try:
            outputs = await self.backend.apply(handle)
        except ApplyError as e:
            message = str(e)
            if e.stderr:
                message = f"{message}\n{e.stderr_tail}"
            logger.error(f"Scenario {scenario.name}: {message}")
            result.add_error("apply_error", message)
            return

        result.outputs = dict(outputs)
        result.transition(ScenarioState.APPLIED)

        result.transition(ScenarioState.VALIDATING)
        await self.validate(scenario, outputs, result)
        if result.violations:
            result.transition(ScenarioState.FAILED)
        else:
            result.transition(ScenarioState.VALIDATED)

    async def validate(
        self,
        scenario: ScenarioDefinition,
        outputs: OutputSet,
        result: ScenarioResult
    ) -> list[Violation]:
        """
        Run every check; faults become violations instead of aborting.

        Violations are appended to result.violations as they are found, so
        a timeout mid-validation keeps what was already collected.
        """
        violations = result.violations

        try:
            violations.extend(self.output_validator.validate(outputs, scenario.expected_outputs))
        except Exception as e:
            logger.exception(f"Output validation faulted: {e}")
            violations.append(Violation("<outputs>", ViolationKind.VALIDATION_ERROR, str(e)))

        if self.state_reader is None:
            logger.info(f"Scenario {scenario.name}: no state reader, skipping live checks")
            return violations

        try:
            snapshot = await self.state_reader.read(
                scenario.resource_name, scenario.resource_group_name
            )
        except ReadTimeoutError as e:
            violations.append(Violation("<snapshot>", ViolationKind.READ_TIMEOUT, str(e)))
            return violations
        except Exception as e:
            logger.error(f"State read faulted: {e}")
            violations.append(Violation("<snapshot>", ViolationKind.VALIDATION_ERROR, str(e)))
            return violations

        result.snapshot = snapshot.model_dump()
        try:
            violations.extend(self.state_validator.validate(result.snapshot, scenario.expected_state))
        except Exception as e:
            logger.exception(f"State validation faulted: {e}")
            violations.append(Violation("<snapshot>", ViolationKind.VALIDATION_ERROR, str(e)))

        return violations
