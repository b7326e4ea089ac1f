"""Provider adapter contract and the shared reconciliation policy."""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..domains.errors import ProviderError, ProvisionerError
from ..domains.models import (
    CleanupFilter,
    Compensation,
    DeleteOutcome,
    Instance,
    ItemSection,
    ProviderName,
    ProviderResult,
    ProvisionOutcome,
    ProvisionRequest,
)
from ..domains.naming import infer_environment, matches_filter, vault_name
from ..domains.retry import RetryPolicy
from ..secrets.domains.store import SecretStore
from ..secrets.workflows.credentials import CredentialResolver

logger = logging.getLogger(__name__)


@dataclass
class ProviderContext:
    """Collaborators shared by every provider in one invocation."""
    store: SecretStore
    credentials: CredentialResolver
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    settings: Dict[str, Any] = field(default_factory=dict)

    def provider_settings(self, provider: ProviderName) -> Dict[str, Any]:
        return ((self.settings.get("providers") or {}).get(provider.value)) or {}


class Provider(ABC):
    """
    One external service.

    Subclasses implement `_provision`, `_list` and `_delete`. The base class
    owns dry-run handling, attaching compensations to failures, filtering
    listings and turning delete failures into outcomes.
    """

    name: ProviderName
    item: str
    kind: str = "resource"

    def __init__(self, context: ProviderContext):
        self.context = context

    @property
    def store(self) -> SecretStore:
        return self.context.store

    @property
    def retry(self) -> RetryPolicy:
        return self.context.retry

    def resource_name(self, request: ProvisionRequest) -> str:
        return vault_name(request.project, request.env)

    @abstractmethod
    def placeholder(self, request: ProvisionRequest) -> ProviderResult:
        """Result returned in dry-run mode, without any external call."""

    @abstractmethod
    async def _provision(self, request: ProvisionRequest,
                         compensations: List[Compensation]) -> ProviderResult:
        ...

    async def provision(self, request: ProvisionRequest) -> ProvisionOutcome:
        """
        Ensure this provider's resource exists for one environment.

        Compensations registered before a failure travel on the raised error
        so the caller can roll them back.

        Raises:
            ConfigError, ProviderError, VerificationError
        """
        name = self.resource_name(request)
        if request.dry_run:
            logger.info(f"  [DRY RUN] Would provision {self.kind} {name}")
            return ProvisionOutcome(result=self.placeholder(request))

        compensations: List[Compensation] = []
        try:
            result = await self._provision(request, compensations)
        except ProvisionerError as e:
            if getattr(e, "provider", None) is None:
                e.provider = self.name.value
            e.compensations = list(compensations)
            raise
        except Exception as e:
            raise ProviderError(f"{self.name.value}: {e}", provider=self.name.value,
                                compensations=compensations) from e

        return ProvisionOutcome(result=result, compensations=compensations)

    async def reconcile(self, name: str, request: ProvisionRequest,
                        compensations: List[Compensation],
                        find: Callable[[], Awaitable[Optional[Any]]],
                        create: Callable[[], Awaitable[Any]],
                        destroy: Callable[[Any], Awaitable[None]],
                        recreate_on_force: bool = True) -> Tuple[Any, bool]:
        """
        Apply the find / reuse / recreate / create policy to one named resource.

        Returns:
            (resource, created). A reused resource registers no compensation.
        """
        existing = await find()
        if existing is not None:
            if not (request.force and recreate_on_force):
                logger.debug(f"  Reusing existing {self.kind}: {name}")
                return existing, False
            logger.info(f"  Recreating {self.kind} {name} (--force)")
            await destroy(existing)

        created = await create()

        async def compensate() -> None:
            await destroy(created)

        compensations.append(Compensation(self.name.value, f"Delete {self.kind} {name}", compensate))
        logger.info(f"  Created {self.kind}: {name}")
        return created, True

    async def write_result(self, request: ProvisionRequest, sections: Sequence[ItemSection]) -> None:
        """Write result fields to the environment vault and read them back."""
        await self.store.write_verified(
            vault_name(request.project, request.env), self.item, sections, provider=self.name.value
        )

    async def read_result(self, request: ProvisionRequest, section: str, field: str) -> Optional[str]:
        return await self.store.read_field(vault_name(request.project, request.env), self.item, section, field)

    async def check_credentials(self) -> None:
        """Raise MissingCredentialsError when a required credential is unresolvable."""
        await self.context.credentials.require(self.name)

    @abstractmethod
    async def _list(self) -> List[Instance]:
        ...

    async def list_instances(self, filter: Optional[CleanupFilter] = None) -> List[Instance]:
        """
        Everything this provider can see, narrowed by the filter.

        Nothing found is an empty list; only authentication or authorization
        failures raise.
        """
        return [instance for instance in await self._list() if matches_filter(instance.name, filter)]

    @abstractmethod
    async def _delete(self, instance_id: str) -> str:
        """Delete one instance and return its display name."""

    async def delete_instance(self, instance_id: str) -> DeleteOutcome:
        """Delete one instance. Never raises; failures come back as outcomes."""
        try:
            name = await self._delete(instance_id)
        except Exception as e:
            logger.error(f"  Failed to delete {self.kind} {instance_id}: {e}")
            return DeleteOutcome(id=instance_id, name=instance_id, success=False, error=str(e))
        logger.info(f"  Deleted {self.kind}: {name}")
        return DeleteOutcome(id=instance_id, name=name, success=True)

    @staticmethod
    def instance(id: str, name: str, metadata: Optional[Dict[str, Any]] = None,
                 created_at: Optional[str] = None) -> Instance:
        return Instance(id=str(id), name=name, environment=infer_environment(name),
                        metadata=metadata or {}, created_at=created_at)


async def try_candidates(candidates: Iterable[Any],
                         attempt: Callable[[Any], Awaitable[Any]],
                         succeeded: Callable[[Any], bool]) -> Optional[Any]:
    """
    Try endpoint variants in order until one satisfies the success predicate.

    Errors from individual variants are logged at DEBUG and skipped.

    Returns:
        The winning candidate, or None when none succeeded
    """
    for candidate in candidates:
        try:
            outcome = await attempt(candidate)
        except ProvisionerError as e:
            logger.debug(f"  Candidate {candidate} failed: {e}")
            continue
        if succeeded(outcome):
            return candidate
        logger.debug(f"  Candidate {candidate} did not succeed")
    return None
