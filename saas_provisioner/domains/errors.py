"""Exception hierarchy shared by the secret stores, providers and workflows.

Every failure raised out of a provider is classified into one of three tiers:

- configuration (``ConfigError``, ``MissingCredentialsError``): never retried,
  surfaced with remediation text before any external mutation where possible;
- transient (``TransientProviderError``, ``OperationInProgressError``): retried
  inside the provider by ``RetryPolicy``;
- permanent (``ProviderRejectedError``, ``VerificationError``): fails the run
  and triggers rollback.
"""
from typing import List, Optional


class ProvisionerError(Exception):
    """Base class for all saas-provisioner errors."""
    pass


class ConfigError(ProvisionerError):
    """Configuration error exception."""
    pass


class MissingCredentialsError(ConfigError):
    """A provider's credentials could not be resolved from any source."""

    def __init__(self, provider: str, missing: List[str], message: Optional[str] = None):
        self.provider = provider
        self.missing = list(missing)
        super().__init__(message or _missing_credentials_message(provider, self.missing))


def _missing_credentials_message(provider: str, missing: List[str]) -> str:
    env_lines = "\n".join(f"  export {name}=..." for name in missing)
    return (
        f"{provider} credentials not found (missing: {', '.join(missing)}).\n\n"
        "Store them in the master vault:\n"
        "  provision-saas --init\n\n"
        "Or set environment variables:\n"
        f"{env_lines}"
    )


class SecretStoreError(ProvisionerError):
    """The secret store backend rejected an operation."""
    pass


class ProviderError(ProvisionerError):
    """An external provider call failed.

    Carries the originating provider and the compensations the provider had
    registered before failing, so the pipeline can roll them back.
    """

    def __init__(self, message: str, provider: Optional[str] = None, compensations=None):
        super().__init__(message)
        self.provider = provider
        self.compensations = list(compensations or [])


class ProviderRejectedError(ProviderError):
    """Permanent failure: authentication rejected, malformed request, conflict."""
    pass


class TransientProviderError(ProviderError):
    """Network blip or server-side failure worth retrying."""
    pass


class OperationInProgressError(TransientProviderError):
    """The remote reports another long operation is still running (HTTP 429)."""
    pass


class VerificationError(ProvisionerError):
    """A write appeared to succeed but reading it back returned something else."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.compensations = []


class CyclicDependencyError(ProvisionerError):
    """The provider prerequisite graph contains a cycle."""
    pass


class ProvisioningError(ProvisionerError):
    """A provisioning run failed and its compensations were replayed.

    Attributes:
        provider: Name of the provider (or phase) that failed
        compensations: Compensations accumulated by the run before the failure
        failed_rollbacks: Compensations whose reversal raised; these resources
            need manual cleanup
    """

    def __init__(self, message: str, provider: Optional[str] = None,
                 compensations=None, failed_rollbacks=None):
        super().__init__(message)
        self.provider = provider
        self.compensations = list(compensations or [])
        self.failed_rollbacks = list(failed_rollbacks or [])
