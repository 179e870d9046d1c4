"""
Provider Credentials

Read-only Azure credentials, passed explicitly to every component that
talks to the provider. Never stored in module-level state.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)

ARM_ENDPOINT = "https://management.azure.com"


class CredentialsError(RuntimeError):
    """Raised when credentials cannot be obtained."""
    pass


@dataclass(frozen=True)
class ProviderCredentials:
    """Azure Resource Manager credentials."""
    subscription_id: str
    access_token: str
    tenant_id: str | None = None
    arm_endpoint: str = ARM_ENDPOINT

    def __repr__(self) -> str:
        return (
            f"ProviderCredentials(subscription_id={self.subscription_id!r}, "
            f"tenant_id={self.tenant_id!r}, access_token=***)"
        )

    def terraform_env(self) -> dict[str, str]:
        """Environment variables understood by the azurerm provider."""
        env = {"ARM_SUBSCRIPTION_ID": self.subscription_id}
        if self.tenant_id:
            env["ARM_TENANT_ID"] = self.tenant_id
        return env

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "ProviderCredentials":
        """
        Load credentials from ARM_SUBSCRIPTION_ID / ARM_ACCESS_TOKEN / ARM_TENANT_ID.

        Raises:
            CredentialsError: If a required variable is missing
        """
        env = os.environ if environ is None else environ
        missing = [k for k in ("ARM_SUBSCRIPTION_ID", "ARM_ACCESS_TOKEN") if not env.get(k)]
        if missing:
            raise CredentialsError(f"Missing environment variables: {', '.join(missing)}")

        return cls(
            subscription_id=env["ARM_SUBSCRIPTION_ID"],
            access_token=env["ARM_ACCESS_TOKEN"],
            tenant_id=env.get("ARM_TENANT_ID") or None,
            arm_endpoint=env.get("ARM_ENDPOINT", ARM_ENDPOINT),
        )

    @classmethod
    async def from_azure_cli(
        cls,
        subscription_id: str | None = None,
        timeout: int = 60
    ) -> "ProviderCredentials":
        """Obtain a management-plane token from a logged-in Azure CLI."""
        cmd = ["az", "account", "get-access-token", "--resource", f"{ARM_ENDPOINT}/", "-o", "json"]
        if subscription_id:
            cmd.extend(["--subscription", subscription_id])

        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise CredentialsError(f"Azure CLI token request failed: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            if proc.returncode is None:
                logger.error(f"az (pid {proc.pid}) timed out after {timeout}s, killing")
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            raise CredentialsError(f"Azure CLI token request timed out after {timeout}s") from e

        if proc.returncode != 0:
            raise CredentialsError(f"Azure CLI token request failed: {stderr.decode().strip()}")

        data = json.loads(stdout)
        return cls(
            subscription_id=subscription_id or data["subscription"],
            access_token=data["accessToken"],
            tenant_id=data.get("tenant"),
        )

    def azure_cli_refresher(self):
        """Coroutine function fetching a fresh token for this subscription."""
        async def refresh() -> "ProviderCredentials":
            fresh = await ProviderCredentials.from_azure_cli(self.subscription_id)
            return replace(fresh, arm_endpoint=self.arm_endpoint)
        return refresh
