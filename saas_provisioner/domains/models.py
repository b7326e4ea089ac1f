"""Domain models for provisioning and cleanup."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional


class ProviderName(str, Enum):
    """Identifies one provider adapter."""
    SECRETS_VAULT = "secrets-vault"
    DATABASE = "database"
    BACKEND_HOST = "backend-host"
    FRONTEND_HOST = "frontend-host"
    EMAIL = "email"
    SOURCE_CONTROL = "source-control"

    def __str__(self) -> str:
        return self.value


class Environment(str, Enum):
    DEV = "dev"
    PROD = "prod"

    def __str__(self) -> str:
        return self.value


INFRASTRUCTURE_PROVIDERS = (
    ProviderName.DATABASE,
    ProviderName.BACKEND_HOST,
    ProviderName.FRONTEND_HOST,
    ProviderName.EMAIL,
)


@dataclass(frozen=True)
class ProvisionFlags:
    """Execution flags for one invocation."""
    verbose: bool = False
    dry_run: bool = False
    force: bool = False


@dataclass(frozen=True)
class ProvisionRequest:
    """One project + environment to provision. Read-only during a run."""
    project: str
    environment: Environment
    flags: ProvisionFlags = field(default_factory=ProvisionFlags)

    @property
    def env(self) -> str:
        return self.environment.value

    @property
    def dry_run(self) -> bool:
        return self.flags.dry_run

    @property
    def force(self) -> bool:
        return self.flags.force


@dataclass
class ItemField:
    """One field of a secret store item."""
    label: str
    value: str
    type: Optional[str] = None  # STRING, CONCEALED, URL; inferred when None


@dataclass
class ItemSection:
    """A labelled group of fields inside a secret store item."""
    label: str
    fields: List[ItemField] = field(default_factory=list)


@dataclass
class ProviderResult:
    """Success payload of one provider for one environment."""
    provider: ProviderName
    resource_name: str
    resource_id: Optional[str] = None
    created: bool = False
    values: Dict[str, str] = field(default_factory=dict)


@dataclass
class Compensation:
    """A reversal action for one resource created during the current run."""
    provider: str
    description: str
    action: Callable[[], Awaitable[None]]

    async def execute(self) -> None:
        await self.action()


@dataclass
class ProvisionOutcome:
    result: ProviderResult
    compensations: List[Compensation] = field(default_factory=list)


@dataclass
class Instance:
    """An external resource as seen by cleanup. Built fresh on every listing."""
    id: str
    name: str
    environment: str = "unknown"  # dev, prod or unknown
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None


@dataclass
class DeleteOutcome:
    id: str
    name: str
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class CleanupFilter:
    """Narrows a provider listing. All fields empty means list everything."""
    project: Optional[str] = None
    env: Optional[str] = None
    pattern: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.project and not self.pattern


@dataclass
class CleanupResult:
    component: str
    listed: List[Instance] = field(default_factory=list)
    deleted: List[DeleteOutcome] = field(default_factory=list)
    failed: List[DeleteOutcome] = field(default_factory=list)
    dry_run: bool = False

    @property
    def total(self) -> int:
        return len(self.deleted) + len(self.failed)
