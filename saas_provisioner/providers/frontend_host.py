"""Frontend static site hosting on Netlify."""
import logging
from typing import Any, Dict, List, Optional

from ..domains.errors import ProviderRejectedError
from ..domains.models import (
    Compensation,
    Instance,
    ItemField,
    ItemSection,
    ProviderName,
    ProviderResult,
    ProvisionRequest,
)
from ..domains.naming import frontend_site_name
from .base import Provider
from .http import ApiClient, json_body

logger = logging.getLogger(__name__)

NETLIFY_API = "https://api.netlify.com/api/v1"
PAGE_SIZE = 100


def site_url(site: Dict[str, Any]) -> str:
    return site.get("ssl_url") or site.get("url") or f"https://{site.get('name')}.netlify.app"


class FrontendHostProvider(Provider):
    name = ProviderName.FRONTEND_HOST
    item = "FrontendHost"
    kind = "Netlify site"

    def resource_name(self, request: ProvisionRequest) -> str:
        return frontend_site_name(request.project, request.env)

    def placeholder(self, request: ProvisionRequest) -> ProviderResult:
        name = self.resource_name(request)
        return ProviderResult(self.name, name, resource_id="dry-run-site-id", values={
            "site_id": "dry-run-site-id",
            "site_name": name,
            "app_url": f"https://{name}.netlify.app",
        })

    async def _api(self) -> ApiClient:
        creds = await self.context.credentials.require(self.name)
        return ApiClient(NETLIFY_API, provider=self.name.value, retry=self.retry, headers={
            "Authorization": f"Bearer {creds['token']}",
        })

    async def _sites(self, api: ApiClient) -> List[Dict[str, Any]]:
        """Every site on the account; pages are read until a short one."""
        sites: List[Dict[str, Any]] = []
        page = 1
        while True:
            batch = json_body(await api.get("/sites", params={"page": page, "per_page": PAGE_SIZE}),
                              self.name.value)
            if not isinstance(batch, list):
                return sites
            sites.extend(batch)
            if len(batch) < PAGE_SIZE:
                return sites
            page += 1

    async def _provision(self, request: ProvisionRequest,
                         compensations: List[Compensation]) -> ProviderResult:
        name = self.resource_name(request)
        creds = await self.context.credentials.resolve(self.name)
        api = await self._api()

        async def find() -> Optional[Dict[str, Any]]:
            for site in await self._sites(api):
                if site.get("name") == name:
                    return site
            return None

        async def create() -> Dict[str, Any]:
            path = f"/{creds['team_slug']}/sites" if creds.get("team_slug") else "/sites"
            site = json_body(await api.post(path, json={"name": name}), self.name.value)
            if not isinstance(site, dict) or not site.get("id"):
                raise ProviderRejectedError(f"Netlify did not return a site id for {name}", provider=self.name.value)
            return site

        async def destroy(site: Dict[str, Any]) -> None:
            await api.delete(f"/sites/{site['id']}", allow_status=(404,))

        site, created = await self.reconcile(name, request, compensations, find, create, destroy)
        url = site_url(site)

        await self.write_result(request, [
            ItemSection("Site", [
                ItemField("site_id", site["id"], "STRING"),
                ItemField("site_name", name, "STRING"),
            ]),
            ItemSection("URLs", [ItemField("app_url", url, "URL")]),
            ItemSection("Credentials", [ItemField("token", creds["token"], "CONCEALED")]),
        ])

        return ProviderResult(self.name, name, resource_id=site["id"], created=created, values={
            "site_id": site["id"],
            "site_name": name,
            "app_url": url,
        })

    async def _list(self) -> List[Instance]:
        api = await self._api()
        return [
            self.instance(site.get("id"), site.get("name") or site.get("id"), metadata={
                "url": site_url(site),
                "account_slug": site.get("account_slug"),
            }, created_at=site.get("created_at"))
            for site in await self._sites(api)
        ]

    async def _delete(self, instance_id: str) -> str:
        api = await self._api()
        await api.delete(f"/sites/{instance_id}")
        return instance_id
