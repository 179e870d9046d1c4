"""
Harness Settings

Immutable run configuration shared read-only by every scenario.

API Management provisioning is slow: Developer and Premium tiers take
30-60 minutes to create and a similar time to delete. Defaults are sized
for that.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Iterator

import yaml


@dataclass(frozen=True)
class ReadRetryPolicy:
    """
    Backoff for read-after-write visibility of live resources.

    Delays grow exponentially from initial_delay_seconds, capped at
    max_delay_seconds, until timeout_seconds of waiting has been spent.
    """
    initial_delay_seconds: float = 5.0
    max_delay_seconds: float = 30.0
    backoff_factor: float = 2.0
    timeout_seconds: float = 300.0

    def delays(self) -> Iterator[float]:
        """Yield sleep durations whose sum never exceeds timeout_seconds."""
        delay = self.initial_delay_seconds
        remaining = self.timeout_seconds
        while remaining > 0:
            step = min(delay, self.max_delay_seconds, remaining)
            yield step
            remaining -= step
            delay *= self.backoff_factor

    def validate(self) -> list[str]:
        errors = []
        if self.initial_delay_seconds <= 0:
            errors.append("Read retry initial delay must be > 0")
        if self.max_delay_seconds < self.initial_delay_seconds:
            errors.append("Read retry max delay must be >= initial delay")
        if self.backoff_factor < 1.0:
            errors.append("Read retry backoff factor must be >= 1.0")
        if self.timeout_seconds < 0:
            errors.append("Read retry timeout must be >= 0")
        return errors


# Transient Azure/Terraform failures worth another apply attempt
DEFAULT_RETRYABLE_ERRORS = (
    r"RequestError: send request failed",
    r"connection reset by peer",
    r"TLS handshake timeout",
    r"Error: .*(429|TooManyRequests)",
    r"ServiceActivationInProgress",
    r"Failed to install provider",
)


@dataclass(frozen=True)
class HarnessSettings:
    """
    Run configuration.

    Usage:
        settings = HarnessSettings.from_yaml("harness.yaml")
        errors = settings.validate()
    """

    # Module under test
    module_dir: Path = Path(".")
    work_root: Path = Path("/tmp/apim-acceptance")
    terraform_binary: str = "terraform"

    # Timeouts (seconds)
    init_timeout_seconds: int = 600
    apply_timeout_seconds: int = 3600
    destroy_timeout_seconds: int = 3600
    output_timeout_seconds: int = 120
    scenario_timeout_seconds: int = 5400
    interrupt_grace_seconds: int = 120

    # Apply retries
    max_apply_retries: int = 3
    apply_retry_delay_seconds: float = 30.0
    retryable_errors: tuple[str, ...] = DEFAULT_RETRYABLE_ERRORS

    # Live state reads
    read_retry: ReadRetryPolicy = field(default_factory=ReadRetryPolicy)

    # Coordination
    max_parallel: int = 4
    keep_workspaces: bool = False
    leak_ledger_path: Path = Path("/tmp/apim-acceptance/leaks.json")

    def validate(self) -> list[str]:
        """Validate settings are sensible."""
        errors = []

        if not Path(self.module_dir).is_dir():
            errors.append(f"Module directory not found: {self.module_dir}")

        for name in (
            "init_timeout_seconds", "apply_timeout_seconds", "destroy_timeout_seconds",
            "output_timeout_seconds", "scenario_timeout_seconds", "interrupt_grace_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be > 0")

        if self.max_apply_retries < 1:
            errors.append("max_apply_retries must be >= 1")

        if self.max_parallel < 1:
            errors.append("max_parallel must be >= 1")

        errors.extend(self.read_retry.validate())
        return errors

    @classmethod
    def from_dict(cls, data: dict) -> "HarnessSettings":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")

        values = dict(data)
        for name in ("module_dir", "work_root", "leak_ledger_path"):
            if name in values:
                values[name] = Path(values[name])
        if "retryable_errors" in values:
            values["retryable_errors"] = tuple(values["retryable_errors"])
        if "read_retry" in values:
            values["read_retry"] = ReadRetryPolicy(**values["read_retry"])
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "HarnessSettings":
        """Load settings from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)


DEFAULT_SETTINGS = HarnessSettings()
