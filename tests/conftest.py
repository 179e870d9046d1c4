"""Pytest fixtures for API Management acceptance harness testing."""
import asyncio
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Any
import pytest

from lifecycle.ledger import LeakLedger
from provisioning.settings import HarnessSettings, ReadRetryPolicy
from provisioning.state_reader import ReadTimeoutError, ResourceSnapshot
from provisioning.terraform import ProvisionedResourceHandle
from scenarios.builtin import get_scenario
from scenarios.definition import ScenarioDefinition

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# Pytest Marker Registration
# =============================================================================

def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line("markers", "scenarios: Scenario definition and identity tests")
    config.addinivalue_line("markers", "validation: Output/state contract tests")
    config.addinivalue_line("markers", "provisioning: Terraform backend and state reader tests")
    config.addinivalue_line("markers", "lifecycle: Orchestrator and coordinator tests")
    config.addinivalue_line("markers", "acceptance: Live tests (provision real Azure resources)")


# =============================================================================
# Fakes (no Terraform, no Azure)
# =============================================================================

def outputs_for(scenario: ScenarioDefinition) -> dict[str, Any]:
    """Outputs a correct module would export for this scenario."""
    v = scenario.variables
    name = v["api_management_name"]
    rg = v["resource_group_name"]
    outputs = {
        "api_management_id": (
            f"/subscriptions/00000000-0000-0000-0000-000000000000/resourceGroups/{rg}"
            f"/providers/Microsoft.ApiManagement/service/{name}"
        ),
        "api_management_name": name,
        "api_management_gateway_url": f"https://{name}.azure-api.net",
        "api_management_portal_url": f"https://{name}.portal.azure-api.net",
        "resource_group_name": rg,
        "location": v["location"],
        "publisher_name": v["publisher_name"],
    }
    if v.get("products"):
        outputs["product_ids"] = {k: f"{k}-id" for k in v["products"]}
    if v.get("apis"):
        outputs["api_ids"] = {k: f"{k}-id" for k in v["apis"]}
    return outputs


def snapshot_for(scenario: ScenarioDefinition) -> ResourceSnapshot:
    """Live state a correct deployment would report for this scenario."""
    v = scenario.variables
    name = v["api_management_name"]
    vnet = v.get("virtual_network_type")
    return ResourceSnapshot(
        id=f"/subscriptions/x/resourceGroups/{v['resource_group_name']}"
           f"/providers/Microsoft.ApiManagement/service/{name}",
        name=name,
        resource_group=v["resource_group_name"],
        location="eastus",
        sku_name=v["sku_name"],
        publisher_name=v["publisher_name"],
        publisher_email=v["publisher_email"],
        gateway_url=f"https://{name}.azure-api.net",
        portal_url=f"https://{name}.portal.azure-api.net",
        virtual_network_type=vnet,
        public_ip_addresses=["20.0.0.1"] if vnet else [],
        private_ip_addresses=["10.0.1.4"] if vnet else [],
        product_ids=list(v.get("products", {})),
        api_ids=[a["name"] for a in v.get("apis", {}).values()],
        provisioning_state="Succeeded",
    )


class FakeBackend:
    """In-memory provisioning backend recording every call."""

    def __init__(
        self,
        outputs: dict[str, Any] | None = None,
        apply_error: Exception | None = None,
        destroy_error: Exception | None = None,
        apply_delay: float = 0.0,
        destroy_delay: float = 0.0,
        prepare_error: Exception | None = None
    ):
        self.outputs = outputs
        self.apply_error = apply_error
        self.destroy_error = destroy_error
        self.apply_delay = apply_delay
        self.destroy_delay = destroy_delay
        self.prepare_error = prepare_error
        self.calls: list[tuple[str, str]] = []
        self.handles: dict[str, ProvisionedResourceHandle] = {}
        self.scenarios: dict[str, ScenarioDefinition] = {}

    async def prepare(self, scenario: ScenarioDefinition) -> ProvisionedResourceHandle:
        self.calls.append(("prepare", scenario.identity))
        if self.prepare_error:
            raise self.prepare_error
        handle = ProvisionedResourceHandle(
            scenario_name=scenario.name,
            identity=scenario.identity,
            resource_group_name=scenario.resource_group_name,
            resource_name=scenario.resource_name,
            workspace=Path("/nonexistent") / scenario.identity,
            var_file=Path("/nonexistent") / scenario.identity / "harness.tfvars.json",
        )
        self.handles[scenario.identity] = handle
        self.scenarios[scenario.identity] = scenario
        return handle

    async def apply(self, handle: ProvisionedResourceHandle) -> dict[str, Any]:
        self.calls.append(("apply", handle.identity))
        handle.apply_started = True
        if self.apply_delay:
            await asyncio.sleep(self.apply_delay)
        if self.apply_error:
            raise self.apply_error
        if self.outputs is not None:
            return dict(self.outputs)
        return outputs_for(self.scenarios[handle.identity])

    async def destroy(self, handle: ProvisionedResourceHandle) -> None:
        self.calls.append(("destroy", handle.identity))
        if self.destroy_delay:
            await asyncio.sleep(self.destroy_delay)
        if self.destroy_error:
            raise self.destroy_error

    def count(self, op: str, identity: str | None = None) -> int:
        return sum(1 for o, i in self.calls if o == op and (identity is None or i == identity))


class FakeStateReader:
    """State reader serving snapshots built from the scenarios a backend prepared."""

    def __init__(
        self,
        backend: FakeBackend | None = None,
        snapshots: dict[str, ResourceSnapshot] | None = None,
        error: Exception | None = None
    ):
        self.backend = backend
        self.snapshots = snapshots or {}
        self.error = error
        self.reads: list[tuple[str, str]] = []

    async def read(self, resource_name: str, resource_group: str) -> ResourceSnapshot:
        self.reads.append((resource_name, resource_group))
        if self.error:
            raise self.error
        if resource_name in self.snapshots:
            return self.snapshots[resource_name]
        if self.backend and resource_name in self.backend.scenarios:
            return snapshot_for(self.backend.scenarios[resource_name])
        raise ReadTimeoutError(f"{resource_name} not found")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings(tmp_path: Path) -> HarnessSettings:
    return HarnessSettings(
        module_dir=tmp_path / "module",
        work_root=tmp_path / "work",
        leak_ledger_path=tmp_path / "leaks.json",
        scenario_timeout_seconds=60,
        interrupt_grace_seconds=1,
        apply_retry_delay_seconds=0.0,
        read_retry=ReadRetryPolicy(initial_delay_seconds=0.015625, max_delay_seconds=0.03125,
                                   timeout_seconds=0.078125),
    )


@pytest.fixture
def ledger(tmp_path: Path) -> LeakLedger:
    return LeakLedger(tmp_path / "leaks.json")


@pytest.fixture
def basic_scenario() -> ScenarioDefinition:
    return get_scenario("basic").instantiate("apim-test-abc12345")


@pytest.fixture
def full_scenario() -> ScenarioDefinition:
    return get_scenario("full").instantiate("apim-full-test-abc12345")


@pytest.fixture
def vnet_scenario() -> ScenarioDefinition:
    return get_scenario("vnet").instantiate("apim-vnet-test-abc12345")


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def reader(backend: FakeBackend) -> FakeStateReader:
    return FakeStateReader(backend)


@pytest.fixture
def module_dir(settings: HarnessSettings) -> Path:
    """A minimal Terraform module on disk."""
    path = Path(settings.module_dir)
    path.mkdir(parents=True)
    (path / "main.tf").write_text('resource "azurerm_resource_group" "this" {}\n')
    (path / "variables.tf").write_text('variable "resource_group_name" {}\n')
    (path / "outputs.tf").write_text('output "resource_group_name" { value = "x" }\n')
    (path / ".terraform").mkdir()
    (path / ".terraform" / "plugin").write_text("cached")
    (path / "terraform.tfstate").write_text("{}")
    (path / "local.tfvars").write_text('sku_name = "Premium_1"\n')
    return path


@pytest.fixture
def live_env() -> dict[str, str]:
    """Environment required by live acceptance tests; skips when absent."""
    required = ["APIM_MODULE_DIR", "ARM_SUBSCRIPTION_ID", "ARM_ACCESS_TOKEN"]
    missing = [k for k in required if not os.environ.get(k)]
    if missing:
        pytest.skip(f"Live acceptance tests need {', '.join(missing)}")
    return {k: os.environ[k] for k in required}


def with_timeout(settings: HarnessSettings, seconds: float) -> HarnessSettings:
    return replace(settings, scenario_timeout_seconds=seconds)
