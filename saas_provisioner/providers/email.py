"""Transactional email sending keys on Resend."""
import logging
from typing import Any, Dict, List, Optional

from ..domains.errors import ConfigError, ProviderRejectedError
from ..domains.models import (
    Compensation,
    Instance,
    ItemField,
    ItemSection,
    ProviderName,
    ProviderResult,
    ProvisionRequest,
)
from ..domains.naming import email_key_name, email_sender
from .base import Provider
from .http import ApiClient, json_body

logger = logging.getLogger(__name__)

RESEND_API = "https://api.resend.com"


class EmailProvider(Provider):
    """
    Mints a per-environment sending key from the account's full-access key.

    Resend only returns a key's token at creation, so an existing key can
    only be reused when its token is already in the vault.
    """

    name = ProviderName.EMAIL
    item = "Email"
    kind = "Resend API key"

    def resource_name(self, request: ProvisionRequest) -> str:
        return email_key_name(request.project, request.env)

    def placeholder(self, request: ProvisionRequest) -> ProviderResult:
        return ProviderResult(self.name, self.resource_name(request), resource_id="dry-run-key-id", values={
            "api_key": "re_dry_run",
            "api_key_id": "dry-run-key-id",
            "email_from": email_sender(request.project, request.env),
        })

    async def _api(self) -> ApiClient:
        creds = await self.context.credentials.require(self.name)
        return ApiClient(RESEND_API, provider=self.name.value, retry=self.retry, headers={
            "Authorization": f"Bearer {creds['api_key']}",
        })

    async def _keys(self, api: ApiClient) -> List[Dict[str, Any]]:
        body = json_body(await api.get("/api-keys"), self.name.value)
        keys = body.get("data", []) if isinstance(body, dict) else body
        return keys if isinstance(keys, list) else []

    async def _provision(self, request: ProvisionRequest,
                         compensations: List[Compensation]) -> ProviderResult:
        name = self.resource_name(request)
        api = await self._api()

        async def find() -> Optional[Dict[str, Any]]:
            for key in await self._keys(api):
                if key.get("name") == name:
                    return key
            return None

        async def create() -> Dict[str, Any]:
            key = json_body(await api.post("/api-keys", json={"name": name, "permission": "sending_access"}),
                            self.name.value)
            if not isinstance(key, dict) or not key.get("token"):
                raise ProviderRejectedError(f"Resend did not return a token for key {name}", provider=self.name.value)
            return key

        async def destroy(key: Dict[str, Any]) -> None:
            await api.delete(f"/api-keys/{key['id']}", allow_status=(404,))

        key, created = await self.reconcile(name, request, compensations, find, create, destroy)

        token = key.get("token")
        if not created:
            token = await self.read_result(request, "Credentials", "api_key")
            if not token:
                raise ConfigError(
                    f"Resend API key '{name}' exists but its token is not in the vault and "
                    f"Resend never returns a token twice.\n"
                    f"Re-run with --force to replace the key."
                )

        email_from = email_sender(request.project, request.env)
        await self.write_result(request, [
            ItemSection("Credentials", [
                ItemField("api_key", token, "CONCEALED"),
                ItemField("api_key_id", key["id"], "STRING"),
            ]),
            ItemSection("Configuration", [ItemField("email_from", email_from, "STRING")]),
        ])

        return ProviderResult(self.name, name, resource_id=key["id"], created=created, values={
            "api_key": token,
            "api_key_id": key["id"],
            "email_from": email_from,
        })

    async def _list(self) -> List[Instance]:
        api = await self._api()
        return [
            self.instance(key.get("id"), key.get("name") or key.get("id"), created_at=key.get("created_at"))
            for key in await self._keys(api)
        ]

    async def _delete(self, instance_id: str) -> str:
        api = await self._api()
        await api.delete(f"/api-keys/{instance_id}")
        return instance_id
