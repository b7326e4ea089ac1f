"""Secret store interface: vault -> item -> section -> field."""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from ...domains.errors import ConfigError, VerificationError
from ...domains.models import ItemField, ItemSection

logger = logging.getLogger(__name__)

_CONCEALED_HINTS = ("password", "secret", "token", "key")


def infer_field_type(field: ItemField) -> str:
    """Field type to store a value under; secret-looking labels are concealed."""
    if field.type:
        return field.type
    label = field.label.lower()
    if any(hint in label for hint in _CONCEALED_HINTS):
        return "CONCEALED"
    return "STRING"


class SecretStore(ABC):
    """
    Hierarchical secret store addressed vault -> item -> section -> field.

    All operations are coroutines; backends that drive blocking CLIs or SDKs
    run them in a worker thread.
    """

    name = "secret-store"

    @abstractmethod
    async def vault_exists(self, vault: str) -> bool:
        ...

    @abstractmethod
    async def create_vault(self, vault: str) -> None:
        ...

    @abstractmethod
    async def delete_vault(self, vault: str) -> None:
        ...

    @abstractmethod
    async def list_vaults(self) -> List[Dict[str, str]]:
        """Return every visible vault as dicts with at least `id` and `name`."""

    @abstractmethod
    async def item_exists(self, vault: str, item: str) -> bool:
        ...

    @abstractmethod
    async def create_item(self, vault: str, item: str, sections: Sequence[ItemSection]) -> None:
        ...

    @abstractmethod
    async def read_field(self, vault: str, item: str, section: str, field: str) -> Optional[str]:
        """Return the field value, or None when the item or field is absent."""

    @abstractmethod
    async def upsert_field(self, vault: str, item: str, section: str, field: ItemField) -> None:
        ...

    @abstractmethod
    async def delete_item(self, vault: str, item: str) -> None:
        ...

    @abstractmethod
    async def whoami(self) -> str:
        """Return the authenticated identity, raising ConfigError when signed out."""

    async def read_reference(self, reference: str) -> Optional[str]:
        raise ConfigError(f"{self.name} cannot resolve secret references like '{reference}'")

    async def create_service_account(self, name: str, vaults: Sequence[str],
                                     permissions: Sequence[str] = ("read_items",)) -> str:
        raise ConfigError(f"{self.name} cannot create service accounts")

    @property
    def supports_service_accounts(self) -> bool:
        return False

    async def ensure_item(self, vault: str, item: str, sections: Sequence[ItemSection]) -> None:
        """Create the item from the sections when absent, otherwise upsert every field."""
        if not await self.item_exists(vault, item):
            logger.debug(f"Creating item {vault}/{item}")
            await self.create_item(vault, item, sections)
            return

        logger.debug(f"Updating item {vault}/{item}")
        for section in sections:
            for field in section.fields:
                await self.upsert_field(vault, item, section.label, field)

    async def write_verified(self, vault: str, item: str, sections: Sequence[ItemSection],
                             provider: Optional[str] = None) -> None:
        """
        Ensure the item and read every written field back.

        Raises:
            VerificationError: If any field reads back a different value
        """
        await self.ensure_item(vault, item, sections)
        for section in sections:
            for field in section.fields:
                actual = await self.read_field(vault, item, section.label, field.label)
                if actual != field.value:
                    raise VerificationError(
                        f"Verification failed for {vault}/{item}/{section.label}/{field.label}: "
                        f"value read back does not match what was written",
                        provider=provider,
                    )
        logger.debug(f"Verified {sum(len(s.fields) for s in sections)} field(s) in {vault}/{item}")
