"""GCP Secret Manager backed secret store."""
import asyncio
import os
import logging
from typing import Optional, Dict, Any, List, Sequence

from google.api_core import exceptions as gcp_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import secretmanager

from ...domains.errors import ConfigError, SecretStoreError
from ...domains.models import ItemField, ItemSection
from ...domains.naming import sanitize
from .config_loader import load_config
from .store import SecretStore

logger = logging.getLogger(__name__)

# Lazy loading: defer config loading until actually needed
# This allows CLI commands like --help to run without requiring a config file
_CONFIG: Optional[Dict[str, Any]] = None
_CONFIG_LOADED = False


def _get_config() -> Dict[str, Any]:
    """
    Lazy load configuration on first use.

    Returns:
        Configuration dictionary

    Raises:
        ConfigError: If config file is invalid
    """
    global _CONFIG, _CONFIG_LOADED

    if not _CONFIG_LOADED:
        _CONFIG = load_config()
        _CONFIG_LOADED = True

        # Set GOOGLE_APPLICATION_CREDENTIALS from config
        service_account_path = (_CONFIG.get("authentication") or {}).get("service_account_path")
        if service_account_path:
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = service_account_path
            logger.info(f"Set GOOGLE_APPLICATION_CREDENTIALS from config: {service_account_path}")

    return _CONFIG


def _label(value: str) -> str:
    """Secret Manager label values: lowercase, at most 63 characters."""
    return sanitize(value).lower()[:63]


def vault_secret_id(vault: str) -> str:
    return f"vault__{sanitize(vault)}"


def field_secret_id(vault: str, item: str, section: str, field: str) -> str:
    return "__".join(sanitize(part) for part in (vault, item, section, field))


class GCPSecretStore(SecretStore):
    """
    Maps vault -> item -> section -> field onto flat Secret Manager secrets.

    A vault is a marker secret `vault__<vault>` labelled kind=vault. Each
    field is its own secret `<vault>__<item>__<section>__<field>` labelled
    kind=field plus the vault and item, so items can be listed and deleted
    with a label filter. Service accounts and op:// references are not
    supported here.
    """

    name = "GCP Secret Manager"

    def __init__(self, project_id: Optional[str] = None):
        self._client = None
        self._project_id = project_id

    @property
    def client(self) -> secretmanager.SecretManagerServiceClient:
        """Lazy-initialize client."""
        if self._client is None:
            self._client = secretmanager.SecretManagerServiceClient()
        return self._client

    def get_project_id(self) -> str:
        """
        Get GCP project ID.

        Priority order:
        1. Explicit project_id passed to the store
        2. GCP_PROJECT environment variable (allows override)
        3. Config file (gcp.project_id)

        Raises:
            ConfigError: If project_id is not found anywhere
        """
        if self._project_id:
            return self._project_id

        gcp_project_env = os.getenv("GCP_PROJECT")
        if gcp_project_env:
            logger.debug(f"Using GCP_PROJECT from environment: {gcp_project_env}")
            self._project_id = gcp_project_env
            return gcp_project_env

        config = _get_config()
        project_id = (config.get("gcp") or {}).get("project_id")
        if project_id:
            logger.debug(f"Using project_id from config: {project_id}")
            self._project_id = project_id
            return project_id

        raise ConfigError(
            "GCP project ID not found. Set the GCP_PROJECT environment variable "
            "or configure gcp.project_id in config.yml"
        )

    @property
    def _parent(self) -> str:
        return f"projects/{self.get_project_id()}"

    def _secret_path(self, secret_id: str) -> str:
        return f"{self._parent}/secrets/{secret_id}"

    def _list(self, label_filter: str) -> List[Any]:
        try:
            return list(self.client.list_secrets(request={"parent": self._parent, "filter": label_filter}))
        except gcp_exceptions.GoogleAPICallError as e:
            raise SecretStoreError(f"Failed to list secrets ({label_filter}): {e}")

    def _create_secret(self, secret_id: str, labels: Dict[str, str]) -> None:
        try:
            self.client.create_secret(request={
                "parent": self._parent,
                "secret_id": secret_id,
                "secret": {"replication": {"automatic": {}}, "labels": labels},
            })
        except gcp_exceptions.AlreadyExists:
            logger.debug(f"Secret {secret_id} already exists")

    def _add_version(self, secret_id: str, value: str) -> None:
        self.client.add_secret_version(request={
            "parent": self._secret_path(secret_id),
            "payload": {"data": value.encode("UTF-8")},
        })

    def _delete(self, secret_name: str) -> None:
        try:
            self.client.delete_secret(request={"name": secret_name})
        except gcp_exceptions.NotFound:
            logger.debug(f"Secret {secret_name} already gone")

    def _vault_exists(self, vault: str) -> bool:
        try:
            self.client.get_secret(request={"name": self._secret_path(vault_secret_id(vault))})
            return True
        except gcp_exceptions.NotFound:
            return False

    def _create_vault(self, vault: str) -> None:
        secret_id = vault_secret_id(vault)
        self._create_secret(secret_id, {"kind": "vault", "vault": _label(vault)})
        self._add_version(secret_id, vault)
        logger.info(f"  Created vault: {vault}")

    def _delete_vault(self, vault: str) -> None:
        for secret in self._list(f"labels.kind=field AND labels.vault={_label(vault)}"):
            self._delete(secret.name)
        self._delete(self._secret_path(vault_secret_id(vault)))
        logger.info(f"  Deleted vault: {vault}")

    def _list_vaults(self) -> List[Dict[str, str]]:
        vaults = []
        for secret in self._list("labels.kind=vault"):
            secret_id = secret.name.rsplit("/", 1)[-1]
            created = getattr(secret, "create_time", None)
            vaults.append({
                "id": secret_id,
                "name": secret_id[len("vault__"):] if secret_id.startswith("vault__") else secret_id,
                "created_at": created.isoformat() if hasattr(created, "isoformat") else None,
            })
        return vaults

    def _item_filter(self, vault: str, item: str) -> str:
        return f"labels.kind=field AND labels.vault={_label(vault)} AND labels.item={_label(item)}"

    def _item_exists(self, vault: str, item: str) -> bool:
        return bool(self._list(self._item_filter(vault, item)))

    def _read_field(self, vault: str, item: str, section: str, field: str) -> Optional[str]:
        name = f"{self._secret_path(field_secret_id(vault, item, section, field))}/versions/latest"
        try:
            response = self.client.access_secret_version(request={"name": name})
        except gcp_exceptions.NotFound:
            return None
        return response.payload.data.decode("UTF-8")

    def _upsert_field(self, vault: str, item: str, section: str, field: ItemField) -> None:
        secret_id = field_secret_id(vault, item, section, field.label)
        self._create_secret(secret_id, {"kind": "field", "vault": _label(vault), "item": _label(item)})
        self._add_version(secret_id, field.value)

    def _create_item(self, vault: str, item: str, sections: Sequence[ItemSection]) -> None:
        for section in sections:
            for field in section.fields:
                self._upsert_field(vault, item, section.label, field)

    def _delete_item(self, vault: str, item: str) -> None:
        for secret in self._list(self._item_filter(vault, item)):
            self._delete(secret.name)

    def _whoami(self) -> str:
        try:
            project_id = self.get_project_id()
            self._list("labels.kind=vault")
        except (auth_exceptions.DefaultCredentialsError, SecretStoreError) as e:
            raise ConfigError(
                f"Cannot access GCP Secret Manager: {e}\n"
                "Configure authentication.service_account_path in config.yml "
                "or run: gcloud auth application-default login"
            )
        return f"project {project_id}"

    async def vault_exists(self, vault: str) -> bool:
        return await asyncio.to_thread(self._vault_exists, vault)

    async def create_vault(self, vault: str) -> None:
        await asyncio.to_thread(self._create_vault, vault)

    async def delete_vault(self, vault: str) -> None:
        await asyncio.to_thread(self._delete_vault, vault)

    async def list_vaults(self) -> List[Dict[str, str]]:
        return await asyncio.to_thread(self._list_vaults)

    async def item_exists(self, vault: str, item: str) -> bool:
        return await asyncio.to_thread(self._item_exists, vault, item)

    async def create_item(self, vault: str, item: str, sections: Sequence[ItemSection]) -> None:
        await asyncio.to_thread(self._create_item, vault, item, sections)

    async def read_field(self, vault: str, item: str, section: str, field: str) -> Optional[str]:
        return await asyncio.to_thread(self._read_field, vault, item, section, field)

    async def upsert_field(self, vault: str, item: str, section: str, field: ItemField) -> None:
        await asyncio.to_thread(self._upsert_field, vault, item, section, field)

    async def delete_item(self, vault: str, item: str) -> None:
        await asyncio.to_thread(self._delete_item, vault, item)

    async def whoami(self) -> str:
        return await asyncio.to_thread(self._whoami)
