"""Backend application hosting on CapRover."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from ..domains.errors import ProviderRejectedError, VerificationError
from ..domains.models import (
    Compensation,
    Instance,
    ItemField,
    ItemSection,
    ProviderName,
    ProviderResult,
    ProvisionRequest,
)
from ..domains.naming import backend_app_name, project_slug, vault_name
from .base import Provider, try_candidates
from .http import ApiClient, json_body

logger = logging.getLogger(__name__)

APPS_PATH = "/user/apps/appDefinitions"

# CapRover versions disagree on the path; tried in order
HTTPS_ENDPOINTS = [
    "/user/apps/appDefinitions/enablebasedomainssl",
    "/user/appDefinitions/enablessl",
    "/user/appDefinitions/enablehttps",
    "/user/appDefinitions/enableHttps",
    "/user/apps/appDefinitions/enablessl",
    "/user/apps/appDefinitions/enablehttps",
    "/user/apps/appDefinitions/enableHttps",
]

# Fields of an app definition that the update endpoint expects back
UPDATE_FIELDS = {
    "projectId": "",
    "description": "",
    "instanceCount": 1,
    "envVars": [],
    "volumes": [],
    "tags": [],
    "nodeId": "",
    "notExposeAsWebApp": False,
    "containerHttpPort": 80,
    "forceSsl": False,
    "ports": [],
    "customNginxConfig": "",
    "redirectDomain": "",
    "preDeployFunction": "",
    "serviceUpdateOverride": "",
    "websocketSupport": False,
}


def api_base(url: str) -> str:
    trimmed = url.rstrip("/")
    return trimmed if "/api/" in trimmed else f"{trimmed}/api/v2"


def app_url(server_url: str, app_name: str) -> str:
    """Public URL of an app: https://<app>.<root domain of the captain host>."""
    host = urlparse(server_url).hostname or ""
    if host.startswith("captain."):
        host = host[len("captain."):]
    return f"https://{app_name}.{host}"


def https_succeeded(response) -> bool:
    """A 2xx with CapRover status 100 or 'OK', or a 2xx that isn't JSON."""
    if response.status_code >= 300:
        return False
    try:
        body = response.json()
    except ValueError:
        return True
    if not isinstance(body, dict):
        return True
    status = body.get("status")
    if status is None and isinstance(body.get("data"), dict):
        status = body["data"].get("status")
    return status == 100 or status == "OK"


def https_candidates() -> List[str]:
    return [f"{path}{suffix}" for path in HTTPS_ENDPOINTS for suffix in ("/", "")]


def build_update_body(app_name: str, current: Dict[str, Any], **overrides: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"appName": app_name}
    for key, default in UPDATE_FIELDS.items():
        value = current.get(key)
        body[key] = default if value is None else value
    for key in ("httpAuth", "appPushWebhook"):
        if current.get(key):
            body[key] = current[key]
    body["appDeployTokenConfig"] = current.get("appDeployTokenConfig") or {"enabled": False}
    body.update(overrides)
    return body


def merge_env_vars(existing: List[Dict[str, str]], updates: Dict[str, str]) -> List[Dict[str, str]]:
    merged = [dict(var) for var in existing]
    for key, value in updates.items():
        for var in merged:
            if var.get("key") == key:
                var["value"] = value
                break
        else:
            merged.append({"key": key, "value": value})
    return merged


class BackendHostProvider(Provider):
    name = ProviderName.BACKEND_HOST
    item = "BackendHost"
    kind = "CapRover app"

    def resource_name(self, request: ProvisionRequest) -> str:
        return backend_app_name(request.project, request.env)

    def placeholder(self, request: ProvisionRequest) -> ProviderResult:
        name = self.resource_name(request)
        return ProviderResult(self.name, name, resource_id=name, values={
            "app_name": name,
            "app_token": "dry-run-token",
            "api_url": f"https://{name}.example.com",
        })

    async def _session(self) -> Tuple[ApiClient, str]:
        """Log in and return an authenticated client plus the server URL."""
        creds = await self.context.credentials.require(self.name)
        server_url = creds["url"]
        headers = {"x-namespace": "captain", "Connection": "close"}
        login = ApiClient(api_base(server_url), provider=self.name.value, retry=self.retry, headers=headers)
        body = json_body(await login.post("/login", data={"password": creds["password"]}), self.name.value)
        token = ((body or {}).get("data") or {}).get("token")
        if not token:
            raise ProviderRejectedError(
                f"Failed to authenticate with CapRover at {server_url}. Verify CAPROVER_PASSWORD is correct.",
                provider=self.name.value,
            )
        api = ApiClient(api_base(server_url), provider=self.name.value, retry=self.retry,
                        headers={**headers, "x-captain-auth": token})
        return api, server_url

    async def _apps(self, api: ApiClient) -> List[Dict[str, Any]]:
        body = json_body(await api.get(f"{APPS_PATH}/"), self.name.value)
        return ((body or {}).get("data") or {}).get("appDefinitions") or []

    async def _find_app(self, api: ApiClient, app_name: str) -> Optional[Dict[str, Any]]:
        for app in await self._apps(api):
            if (app.get("appName") or "").lower() == app_name:
                return app
        return None

    async def _post(self, api: ApiClient, path: str, payload: Dict[str, Any], what: str) -> Dict[str, Any]:
        body = json_body(await api.post(path, json=payload), self.name.value)
        status = (body or {}).get("status")
        if status not in (None, 100, "OK"):
            raise ProviderRejectedError(f"CapRover {what} failed: {body.get('description') or status}",
                                        provider=self.name.value)
        return body

    async def _enable_https(self, api: ApiClient, app_name: str) -> None:
        winner = await try_candidates(
            https_candidates(),
            lambda path: api.post(path, json={"appName": app_name}, retry=False, allow_status=range(400, 600)),
            https_succeeded,
        )
        if winner:
            logger.debug(f"  HTTPS enabled through {winner}")
        else:
            logger.warning(f"  Could not enable HTTPS for {app_name}; enable it in the CapRover UI")

    async def _deploy_token(self, api: ApiClient, app_name: str) -> str:
        current = await self._find_app(api, app_name) or {}
        config = current.get("appDeployTokenConfig") or {}
        if config.get("enabled") and config.get("appDeployToken"):
            return config["appDeployToken"]

        await self._post(api, f"{APPS_PATH}/update/",
                         build_update_body(app_name, current, appDeployTokenConfig={"enabled": True}),
                         "enable app deploy token")
        after = await self._find_app(api, app_name) or {}
        token = (after.get("appDeployTokenConfig") or {}).get("appDeployToken") or ""
        if not token:
            logger.warning(f"  App deploy token not available for {app_name}; enable it in the CapRover UI")
        return token

    async def _service_account(self, request: ProvisionRequest) -> Tuple[str, str]:
        """Reuse the app's service account from the vault, or mint a new one."""
        existing_name = await self.read_result(request, "ServiceAccount", "service_account_name")
        if existing_name and not request.force:
            token = await self.read_result(request, "ServiceAccount", "token") or ""
            if not token:
                logger.warning(f"  Service account '{existing_name}' found but its token is missing; "
                               f"re-run with --force to recreate it")
            logger.debug(f"  Reusing service account {existing_name}")
            return existing_name, token

        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        name = f"{project_slug(request.project)}-sa-{request.env}-caprover-v{stamp}"
        token = await self.store.create_service_account(name, [vault_name(request.project, request.env)])
        return name, token

    async def _set_env_vars(self, api: ApiClient, app_name: str, env_vars: Dict[str, str]) -> None:
        current = await self._find_app(api, app_name)
        if current is None:
            raise ProviderRejectedError(f"App '{app_name}' not found in CapRover", provider=self.name.value)
        merged = merge_env_vars(current.get("envVars") or [], env_vars)
        await self._post(api, f"{APPS_PATH}/update/", build_update_body(app_name, current, envVars=merged),
                         "update environment variables")

        after = await self._find_app(api, app_name) or {}
        actual = {var.get("key"): var.get("value") for var in after.get("envVars") or []}
        wrong = [key for key, value in env_vars.items() if actual.get(key) != value]
        if wrong:
            raise VerificationError(
                f"CapRover environment variables not set on {app_name}: {', '.join(wrong)}",
                provider=self.name.value,
            )
        logger.debug(f"  Verified environment variables on {app_name}")

    async def _provision(self, request: ProvisionRequest,
                         compensations: List[Compensation]) -> ProviderResult:
        name = self.resource_name(request)
        api, server_url = await self._session()

        async def find():
            return await self._find_app(api, name)

        async def create():
            await self._post(api, f"{APPS_PATH}/register/", {"appName": name}, "register app")
            await self._enable_https(api, name)
            return {"appName": name}

        async def destroy(app):
            await self._post(api, f"{APPS_PATH}/delete/", {"appName": app["appName"]}, "delete app")

        _, created = await self.reconcile(name, request, compensations, find, create, destroy)

        api_url = app_url(server_url, name)
        app_token = await self._deploy_token(api, name)

        sections = [
            ItemSection("Application", [ItemField("app_name", name, "STRING")]),
            ItemSection("Server", [ItemField("url", server_url, "URL")]),
            ItemSection("URLs", [ItemField("api_url", api_url, "URL")]),
        ]
        if app_token:
            sections.append(ItemSection("Deployment", [ItemField("app_token", app_token, "CONCEALED")]))

        if self.store.supports_service_accounts:
            sa_name, sa_token = await self._service_account(request)
            sa_fields = [ItemField("service_account_name", sa_name, "STRING")]
            if sa_token:
                await self._set_env_vars(api, name, {
                    "OP_SERVICE_ACCOUNT_TOKEN": sa_token,
                    "OP_VAULT": vault_name(request.project, request.env),
                })
                sa_fields.append(ItemField("token", sa_token, "CONCEALED"))
            sections.append(ItemSection("ServiceAccount", sa_fields))
        else:
            logger.debug(f"  {self.store.name} cannot mint service accounts; skipping app secrets access")

        await self.write_result(request, sections)

        return ProviderResult(self.name, name, resource_id=name, created=created, values={
            "app_name": name,
            "app_token": app_token,
            "api_url": api_url,
        })

    async def _list(self) -> List[Instance]:
        api, _ = await self._session()
        return [
            self.instance(app.get("appName"), app.get("appName"), metadata={
                "instanceCount": app.get("instanceCount"),
                "notExposeAsWebApp": app.get("notExposeAsWebApp"),
                "hasPersistentData": app.get("hasPersistentData"),
            })
            for app in await self._apps(api)
        ]

    async def _delete(self, instance_id: str) -> str:
        api, _ = await self._session()
        await self._post(api, f"{APPS_PATH}/delete/", {"appName": instance_id}, "delete app")
        return instance_id
