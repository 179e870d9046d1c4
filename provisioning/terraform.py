"""
Terraform Provisioning Backend

Applies and destroys the module under test with the terraform CLI.

Each scenario gets a private copy of the module directory (its own
workspace and state file), so scenarios running in parallel never share
Terraform state.
"""

import asyncio
import json
import logging
import os
import re
import shutil
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from scenarios.definition import ScenarioDefinition

from .credentials import ProviderCredentials
from .settings import HarnessSettings, DEFAULT_SETTINGS

logger = logging.getLogger(__name__)

VAR_FILE_NAME = "harness.tfvars.json"

# Never copied into a scenario workspace
WORKSPACE_IGNORE = shutil.ignore_patterns(
    ".terraform", "*.tfstate", "*.tfstate.*", "*.tfvars", "*.tfvars.json", ".git"
)

OutputSet = Mapping[str, Any]


# =============================================================================
# Errors
# =============================================================================

class TerraformError(RuntimeError):
    """A terraform command failed."""

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = ""
    ):
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self.stderr.strip().splitlines()[-20:])


class ApplyError(TerraformError):
    """Provisioning failed. `handle` may own partially created resources."""

    def __init__(self, message: str, handle: "ProvisionedResourceHandle | None" = None, **kwargs):
        super().__init__(message, **kwargs)
        self.handle = handle


class DestroyError(TerraformError):
    """Teardown failed. Resources may have leaked."""
    pass


# =============================================================================
# Handle
# =============================================================================

@dataclass
class ProvisionedResourceHandle:
    """The workspace through which one scenario's resources are managed."""
    scenario_name: str
    identity: str
    resource_group_name: str
    resource_name: str
    workspace: Path
    var_file: Path
    created_at: datetime = field(default_factory=datetime.now)
    apply_started: bool = False

    def to_dict(self) -> dict:
        return {
            "scenario_name": self.scenario_name,
            "identity": self.identity,
            "resource_group_name": self.resource_group_name,
            "resource_name": self.resource_name,
            "workspace": str(self.workspace),
            "created_at": self.created_at.isoformat(),
            "apply_started": self.apply_started,
        }


@dataclass
class CommandResult:
    """Result of one terraform invocation."""
    command: list[str]
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float


def parse_outputs(raw: str) -> OutputSet:
    """
    Flatten `terraform output -json` into {name: value}.

    The CLI emits {"name": {"value": ..., "type": ..., "sensitive": bool}}.
    """
    data = json.loads(raw or "{}")
    return MappingProxyType({
        name: entry.get("value") if isinstance(entry, dict) else entry
        for name, entry in data.items()
    })


# =============================================================================
# Backend
# =============================================================================

class TerraformBackend:
    """
    Provisioning backend driving the terraform CLI.

    Usage:
        backend = TerraformBackend(settings, credentials)
        handle = await backend.prepare(scenario)
        try:
            outputs = await backend.apply(handle)
        finally:
            await backend.destroy(handle)
    """

    def __init__(
        self,
        settings: HarnessSettings = DEFAULT_SETTINGS,
        credentials: ProviderCredentials | None = None
    ):
        self.settings = settings
        self.credentials = credentials
        self._retryable = [re.compile(p) for p in settings.retryable_errors]

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["TF_IN_AUTOMATION"] = "1"
        env["TF_INPUT"] = "0"
        if self.credentials:
            env.update(self.credentials.terraform_env())
        return env

    def _is_retryable(self, stderr: str) -> bool:
        return any(p.search(stderr) for p in self._retryable)

    async def _interrupt(self, proc: asyncio.subprocess.Process) -> None:
        """Ask terraform to stop gracefully (SIGINT), kill it if it will not."""
        if proc.returncode is not None:
            return
        try:
            proc.send_signal(signal.SIGINT)
            await asyncio.wait_for(proc.wait(), timeout=self.settings.interrupt_grace_seconds)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.error(f"terraform (pid {proc.pid}) ignored SIGINT, killing")
            proc.kill()
            await proc.wait()

    async def _run_terraform(
        self,
        args: list[str],
        cwd: Path,
        timeout: float
    ) -> CommandResult:
        """Run terraform and return its result. Raises TerraformError on timeout."""
        cmd = [self.settings.terraform_binary, *args]
        logger.debug(f"Running: {' '.join(cmd)} (in {cwd})")
        start = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                env=self._env(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise TerraformError(f"Could not start terraform: {e}", command=cmd) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._interrupt(proc)
            raise TerraformError(
                f"terraform {args[0]} timed out after {timeout}s",
                command=cmd
            )
        except asyncio.CancelledError:
            await self._interrupt(proc)
            raise

        return CommandResult(
            command=cmd,
            returncode=proc.returncode or 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_seconds=time.monotonic() - start
        )

    async def _run_with_retries(
        self,
        args: list[str],
        cwd: Path,
        timeout: float,
        label: str
    ) -> CommandResult:
        """Run a mutating command, retrying transient provider errors."""
        attempts = self.settings.max_apply_retries
        for attempt in range(1, attempts + 1):
            result = await self._run_terraform(args, cwd, timeout)
            if result.returncode == 0:
                return result

            if attempt < attempts and self._is_retryable(result.stderr):
                logger.warning(
                    f"{label}: transient error (attempt {attempt}/{attempts}), "
                    f"retrying in {self.settings.apply_retry_delay_seconds}s"
                )
                await asyncio.sleep(self.settings.apply_retry_delay_seconds)
                continue

            return result

        return result

    async def prepare(self, scenario: ScenarioDefinition) -> ProvisionedResourceHandle:
        """
        Create the scenario's private workspace and variables file.

        Raises:
            TerraformError: If the workspace cannot be created
        """
        workspace = Path(self.settings.work_root) / scenario.identity
        if workspace.exists():
            raise TerraformError(f"Workspace already exists: {workspace}")

        try:
            await asyncio.to_thread(
                shutil.copytree, self.settings.module_dir, workspace, ignore=WORKSPACE_IGNORE
            )
            var_file = workspace / VAR_FILE_NAME
            var_file.write_text(json.dumps(scenario.tfvars(), indent=2))
        except OSError as e:
            raise TerraformError(f"Could not prepare workspace {workspace}: {e}") from e

        logger.info(f"{scenario.name}: workspace {workspace}")
        return ProvisionedResourceHandle(
            scenario_name=scenario.name,
            identity=scenario.identity,
            resource_group_name=scenario.resource_group_name,
            resource_name=scenario.resource_name,
            workspace=workspace,
            var_file=var_file
        )

    async def apply(self, handle: ProvisionedResourceHandle) -> OutputSet:
        """
        Init and apply the module, then read its outputs.

        Raises:
            ApplyError: On any failure; resources may be partially created
        """
        s = self.settings
        label = f"{handle.scenario_name} apply"

        try:
            init = await self._run_terraform(
                ["init", "-input=false", "-no-color"], handle.workspace, s.init_timeout_seconds
            )
        except TerraformError as e:
            raise ApplyError(str(e), handle=handle, command=e.command) from e
        if init.returncode != 0:
            raise ApplyError(
                f"terraform init failed ({init.returncode})",
                handle=handle, command=init.command,
                returncode=init.returncode, stderr=init.stderr
            )

        handle.apply_started = True
        try:
            result = await self._run_with_retries(
                ["apply", "-auto-approve", "-input=false", "-no-color",
                 f"-var-file={handle.var_file.name}"],
                handle.workspace, s.apply_timeout_seconds, label
            )
        except TerraformError as e:
            raise ApplyError(str(e), handle=handle, command=e.command) from e
        if result.returncode != 0:
            raise ApplyError(
                f"terraform apply failed ({result.returncode})",
                handle=handle, command=result.command,
                returncode=result.returncode, stderr=result.stderr
            )
        logger.info(f"{label}: completed in {result.duration_seconds:.0f}s")

        try:
            return await self.output(handle)
        except TerraformError as e:
            raise ApplyError(str(e), handle=handle, command=e.command,
                             returncode=e.returncode, stderr=e.stderr) from e

    async def output(self, handle: ProvisionedResourceHandle) -> OutputSet:
        """Read the module outputs of an applied workspace."""
        result = await self._run_terraform(
            ["output", "-json", "-no-color"], handle.workspace, self.settings.output_timeout_seconds
        )
        if result.returncode != 0:
            raise TerraformError(
                f"terraform output failed ({result.returncode})",
                command=result.command, returncode=result.returncode, stderr=result.stderr
            )
        try:
            return parse_outputs(result.stdout)
        except (json.JSONDecodeError, AttributeError) as e:
            raise TerraformError(f"Unparseable terraform output: {e}", command=result.command) from e

    async def destroy(self, handle: ProvisionedResourceHandle) -> None:
        """
        Destroy everything the workspace created.

        Raises:
            DestroyError: If terraform destroy fails; resources may have leaked
        """
        if not handle.apply_started:
            logger.info(f"{handle.scenario_name}: nothing applied, removing workspace only")
            self._remove_workspace(handle)
            return

        try:
            result = await self._run_with_retries(
                ["destroy", "-auto-approve", "-input=false", "-no-color",
                 f"-var-file={handle.var_file.name}"],
                handle.workspace, self.settings.destroy_timeout_seconds,
                f"{handle.scenario_name} destroy"
            )
        except TerraformError as e:
            raise DestroyError(str(e), command=e.command) from e

        if result.returncode != 0:
            raise DestroyError(
                f"terraform destroy failed ({result.returncode})",
                command=result.command, returncode=result.returncode, stderr=result.stderr
            )

        logger.info(f"{handle.scenario_name}: destroyed in {result.duration_seconds:.0f}s")
        self._remove_workspace(handle)

    def _remove_workspace(self, handle: ProvisionedResourceHandle) -> None:
        if self.settings.keep_workspaces:
            return
        shutil.rmtree(handle.workspace, ignore_errors=True)
