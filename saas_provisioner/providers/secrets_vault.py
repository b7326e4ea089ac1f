"""Per-environment secrets vault."""
import logging
import secrets
from typing import List

from ..domains.models import (
    Compensation,
    Instance,
    ItemField,
    ItemSection,
    ProviderName,
    ProviderResult,
    ProvisionRequest,
)
from .base import Provider

logger = logging.getLogger(__name__)


class SecretsVaultProvider(Provider):
    """
    Ensures the environment vault and seeds the app's JWT secret.

    The vault holds every other provider's results, so --force never
    recreates it.
    """

    name = ProviderName.SECRETS_VAULT
    item = "Auth"
    kind = "vault"

    def placeholder(self, request: ProvisionRequest) -> ProviderResult:
        vault = self.resource_name(request)
        return ProviderResult(self.name, vault, resource_id=vault, values={"vault_name": vault})

    async def _provision(self, request: ProvisionRequest,
                         compensations: List[Compensation]) -> ProviderResult:
        vault = self.resource_name(request)

        async def find():
            return vault if await self.store.vault_exists(vault) else None

        async def create():
            await self.store.create_vault(vault)
            return vault

        async def destroy(name):
            await self.store.delete_vault(name)

        _, created = await self.reconcile(vault, request, compensations, find, create, destroy,
                                          recreate_on_force=False)

        existing = await self.read_result(request, "Secrets", "jwt_secret")
        if existing:
            logger.debug("  jwt_secret already present")
        else:
            await self.write_result(request, [
                ItemSection("Secrets", [ItemField("jwt_secret", secrets.token_hex(32), "CONCEALED")]),
            ])
            logger.info("  Seeded jwt_secret")

        return ProviderResult(self.name, vault, resource_id=vault, created=created,
                              values={"vault_name": vault})

    async def check_credentials(self) -> None:
        identity = await self.store.whoami()
        logger.debug(f"  {self.store.name} authenticated as {identity}")

    async def _list(self) -> List[Instance]:
        return [
            self.instance(v["name"], v["name"], metadata={"vault_id": v.get("id")},
                          created_at=v.get("created_at"))
            for v in await self.store.list_vaults()
        ]

    async def _delete(self, instance_id: str) -> str:
        await self.store.delete_vault(instance_id)
        return instance_id
