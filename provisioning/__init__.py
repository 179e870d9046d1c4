"""
Provisioning

Terraform backend, live state reader, credentials and run settings.
"""

__version__ = "1.0.0"

from .credentials import CredentialsError, ProviderCredentials
from .settings import DEFAULT_SETTINGS, HarnessSettings, ReadRetryPolicy
from .state_reader import (
    ApiManagementStateReader,
    ReadTimeoutError,
    ResourceSnapshot,
    StateReadError,
)
from .terraform import (
    ApplyError,
    DestroyError,
    OutputSet,
    ProvisionedResourceHandle,
    TerraformBackend,
    TerraformError,
)

__all__ = [
    "CredentialsError",
    "ProviderCredentials",
    "DEFAULT_SETTINGS",
    "HarnessSettings",
    "ReadRetryPolicy",
    "ApiManagementStateReader",
    "ReadTimeoutError",
    "ResourceSnapshot",
    "StateReadError",
    "ApplyError",
    "DestroyError",
    "OutputSet",
    "ProvisionedResourceHandle",
    "TerraformBackend",
    "TerraformError",
]
