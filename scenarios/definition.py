"""
Scenario Definition Models

Pydantic models for acceptance-test scenarios.

A ScenarioTemplate is the reusable, identity-free description of a test
case (loadable from YAML). Instantiating it with a freshly allocated
identity yields an immutable ScenarioDefinition whose variables are
handed to the provisioning backend.
"""

import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from validation.contract import Expectation, is_empty

from .values import check_value, copy_value, merge_values

logger = logging.getLogger(__name__)

REQUIRED_VARIABLES = (
    "resource_group_name",
    "api_management_name",
    "publisher_name",
    "publisher_email",
    "sku_name",
)

# Derived from the identity; never overridable by a template
IDENTITY_VARIABLES = ("resource_group_name", "api_management_name")

VALID_VNET_TYPES = {"None", "External", "Internal"}

_SKU_RE = re.compile(r"^(Consumption|Developer|Basic|Standard|Premium)_\d+$")


class ConfigValidationError(ValueError):
    """Raised when scenario input is missing or invalid. Nothing is provisioned."""
    pass


def _format_errors(error: ValidationError) -> str:
    parts = []
    for e in error.errors():
        where = ".".join(str(p) for p in e["loc"]) or "<root>"
        parts.append(f"{where}: {e['msg']}")
    return "; ".join(parts)


# =============================================================================
# Nested Configuration
# =============================================================================

class Product(BaseModel):
    """API Management product."""
    model_config = ConfigDict(extra="allow")

    display_name: str
    description: str | None = None
    approval_required: bool = False
    published: bool = True
    subscription_required: bool = True
    subscriptions_limit: int | None = Field(None, ge=0)


class Operation(BaseModel):
    """API operation."""
    model_config = ConfigDict(extra="allow")

    display_name: str
    method: str
    url_template: str
    description: str | None = None

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v):
        return v.upper()


class Api(BaseModel):
    """API definition with its operations."""
    model_config = ConfigDict(extra="allow")

    name: str
    display_name: str
    path: str
    description: str | None = None
    protocols: list[str] = Field(default_factory=lambda: ["https"])
    service_url: str | None = None
    operations: dict[str, Operation] = Field(default_factory=dict)


class NamedValue(BaseModel):
    """Named value (optionally secret)."""
    model_config = ConfigDict(extra="allow")

    display_name: str
    value: str
    secret: bool = False


# =============================================================================
# Standard Contracts
# =============================================================================

def standard_output_expectations(variables: dict[str, Any]) -> list[Expectation]:
    """Outputs every run of the module must export."""
    expectations = [
        Expectation(key="api_management_id", contains=["Microsoft.ApiManagement/service"]),
        Expectation(key="api_management_name"),
        Expectation(key="api_management_gateway_url", starts_with="https://"),
        Expectation(key="api_management_portal_url", starts_with="https://"),
        Expectation(key="resource_group_name"),
        Expectation(key="location"),
        Expectation(key="publisher_name", equals=variables.get("publisher_name")),
    ]
    if variables.get("products"):
        expectations.append(Expectation(key="product_ids", contains=list(variables["products"])))
    if variables.get("apis"):
        expectations.append(Expectation(key="api_ids", contains=list(variables["apis"])))
    return expectations


def standard_state_expectations(variables: dict[str, Any]) -> list[Expectation]:
    """Properties the live service must report."""
    expectations = [
        Expectation(key="name", equals=variables.get("api_management_name")),
        Expectation(key="sku_name", equals=variables.get("sku_name")),
        Expectation(key="publisher_name", equals=variables.get("publisher_name")),
        Expectation(key="publisher_email", equals=variables.get("publisher_email")),
        Expectation(key="gateway_url"),
        Expectation(key="portal_url"),
    ]

    # Without VNet integration the address lists may legitimately be empty
    vnet_type = variables.get("virtual_network_type")
    if vnet_type and vnet_type != "None":
        expectations.extend([
            Expectation(key="virtual_network_type", equals=vnet_type),
            Expectation(key="public_ip_addresses"),
            Expectation(key="private_ip_addresses"),
        ])

    if variables.get("products"):
        expectations.append(Expectation(key="product_ids", contains=list(variables["products"])))
    return expectations


# =============================================================================
# Scenario Definition
# =============================================================================

class ScenarioDefinition(BaseModel):
    """
    One fully resolved test case.

    Immutable once built. `variables` is a private copy; callers that need
    to hand it on get another copy from tfvars().
    """
    model_config = ConfigDict(frozen=True)

    name: str
    identity: str
    variables: dict[str, Any]
    expected_outputs: list[Expectation] = Field(default_factory=list)
    expected_state: list[Expectation] = Field(default_factory=list)
    timeout_seconds: int | None = Field(None, gt=0)

    @field_validator("variables", mode="before")
    @classmethod
    def copy_variables(cls, v):
        # Nested values are otherwise shared with the caller
        return copy_value(v) if isinstance(v, dict) else v

    @model_validator(mode="after")
    def check_variables(self):
        problems = check_value(self.variables)
        missing = [k for k in REQUIRED_VARIABLES if is_empty(self.variables.get(k))]
        if missing:
            problems.append(f"missing required variables: {', '.join(missing)}")
        if problems:
            raise ValueError("; ".join(problems))
        return self

    @classmethod
    def create(cls, **data) -> "ScenarioDefinition":
        """Build a definition, raising ConfigValidationError on bad input."""
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigValidationError(
                f"Scenario {data.get('name', '?')!r}: {_format_errors(e)}"
            ) from e

    @property
    def resource_group_name(self) -> str:
        return self.variables["resource_group_name"]

    @property
    def resource_name(self) -> str:
        return self.variables["api_management_name"]

    def tfvars(self) -> dict[str, Any]:
        """Copy of the variables for the provisioning backend."""
        return copy_value(self.variables)


# =============================================================================
# Scenario Template
# =============================================================================

class ScenarioTemplate(BaseModel):
    """
    Reusable scenario description, without identity.

    Usage:
        template = ScenarioTemplate.from_yaml("scenarios/full.yaml")
        scenario = template.instantiate(allocate(template.name_prefix))
    """
    name: str
    description: str = ""
    name_prefix: str
    location: str = "East US"
    environment: str = "test"
    publisher_name: str
    publisher_email: str
    sku_name: str = "Developer_1"
    virtual_network_type: str | None = None
    products: dict[str, Product] = Field(default_factory=dict)
    apis: dict[str, Api] = Field(default_factory=dict)
    named_values: dict[str, NamedValue] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)
    extra_variables: dict[str, Any] = Field(default_factory=dict)
    expected_outputs: list[Expectation] = Field(default_factory=list)
    expected_state: list[Expectation] = Field(default_factory=list)
    timeout_seconds: int | None = Field(None, gt=0)

    @field_validator("name", "publisher_name")
    @classmethod
    def not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("publisher_email")
    @classmethod
    def validate_email(cls, v):
        if "@" not in v:
            raise ValueError(f"not an email address: {v!r}")
        return v

    @field_validator("sku_name")
    @classmethod
    def validate_sku(cls, v):
        if not _SKU_RE.match(v):
            raise ValueError(f"invalid SKU {v!r} (expected e.g. Developer_1)")
        return v

    @field_validator("virtual_network_type")
    @classmethod
    def validate_vnet_type(cls, v):
        if v is not None and v not in VALID_VNET_TYPES:
            raise ValueError(f"must be one of {sorted(VALID_VNET_TYPES)}")
        return v

    @field_validator("extra_variables")
    @classmethod
    def no_identity_overrides(cls, v):
        overridden = [k for k in IDENTITY_VARIABLES if k in v]
        if overridden:
            raise ValueError(
                f"{', '.join(overridden)} are derived from the run identity and cannot be set"
            )
        return v

    @classmethod
    def parse(cls, data: dict[str, Any]) -> "ScenarioTemplate":
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigValidationError(
                f"Scenario {data.get('name', '?')!r}: {_format_errors(e)}"
            ) from e

    @classmethod
    def from_yaml(cls, path: str | Path) -> "ScenarioTemplate":
        """Load a scenario template from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ConfigValidationError(f"{path}: expected a mapping at top level")
        return cls.parse(data)

    def to_yaml(self, path: str | Path) -> None:
        with open(path, "w") as f:
            yaml.safe_dump(self.model_dump(mode="json", exclude_defaults=True), f, sort_keys=False)

    def build_variables(self, identity: str) -> dict[str, Any]:
        """
        Resolve the Terraform variables for one run.

        The identity goes into every name-bearing field; nested structures
        are fresh copies owned by the caller.
        """
        variables: dict[str, Any] = {
            "resource_group_name": f"rg-{identity}",
            "location": self.location,
            "environment": self.environment,
            "api_management_name": identity,
            "publisher_name": self.publisher_name,
            "publisher_email": self.publisher_email,
            "sku_name": self.sku_name,
            "tags": dict(self.tags),
        }
        if self.virtual_network_type:
            variables["virtual_network_type"] = self.virtual_network_type
        if self.products:
            variables["products"] = {
                k: p.model_dump(exclude_none=True) for k, p in self.products.items()
            }
        if self.apis:
            variables["apis"] = {
                k: a.model_dump(exclude_none=True) for k, a in self.apis.items()
            }
        if self.named_values:
            variables["named_values"] = {
                k: n.model_dump(exclude_none=True) for k, n in self.named_values.items()
            }

        return merge_values(variables, self.extra_variables)

    def instantiate(self, identity: str) -> ScenarioDefinition:
        """
        Build the definition for one run.

        Raises:
            ConfigValidationError: If required variables are missing
        """
        variables = self.build_variables(identity)
        logger.debug(f"Scenario {self.name}: resolved variables for {identity}")

        return ScenarioDefinition.create(
            name=self.name,
            identity=identity,
            variables=variables,
            expected_outputs=standard_output_expectations(variables) + list(self.expected_outputs),
            expected_state=standard_state_expectations(variables) + list(self.expected_state),
            timeout_seconds=self.timeout_seconds,
        )
