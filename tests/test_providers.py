"""Provider adapter tests against mocked REST APIs (respx) and a fake gh CLI."""
import json

import httpx
import pytest
import respx

from saas_provisioner.domains.errors import (
    ConfigError,
    MissingCredentialsError,
    OperationInProgressError,
    ProviderRejectedError,
    TransientProviderError,
)
from saas_provisioner.domains.models import (
    CleanupFilter,
    Environment,
    ProvisionFlags,
    ProvisionRequest,
)
from saas_provisioner.providers.backend_host import (
    BackendHostProvider,
    api_base,
    app_url,
    build_update_body,
    https_succeeded,
    merge_env_vars,
)
from saas_provisioner.providers.database import DatabaseProvider, pick_connection_string
from saas_provisioner.providers.email import EmailProvider
from saas_provisioner.providers.frontend_host import FrontendHostProvider
from saas_provisioner.providers.http import ApiClient, classify_response
from saas_provisioner.providers.secrets_vault import SecretsVaultProvider
from saas_provisioner.providers.source_control import SourceControlProvider, ci_secret_names

NEON = "https://console.neon.tech/api/v2"
CAPTAIN = "https://captain.example.com/api/v2"
APPS = f"{CAPTAIN}/user/apps/appDefinitions"
NETLIFY = "https://api.netlify.com/api/v1"
RESEND = "https://api.resend.com"


def request_for(env="dev", **flags):
    return ProvisionRequest("Acme", Environment(env), ProvisionFlags(**flags))


class TestHttpHelpers:

    def test_classify_response(self):
        req = httpx.Request("GET", "https://x")
        classify_response(httpx.Response(200, request=req), "p", "call")

        with pytest.raises(OperationInProgressError):
            classify_response(httpx.Response(429, text="operation already in progress", request=req), "p", "call")
        with pytest.raises(TransientProviderError):
            classify_response(httpx.Response(429, text="slow down", request=req), "p", "call")
        with pytest.raises(TransientProviderError):
            classify_response(httpx.Response(502, request=req), "p", "call")
        with pytest.raises(ProviderRejectedError):
            classify_response(httpx.Response(401, request=req), "p", "call")

    @pytest.mark.asyncio
    @respx.mock
    async def test_api_client_retries_server_errors(self, context):
        route = respx.get("https://api.example.com/things").mock(side_effect=[
            httpx.Response(503),
            httpx.Response(200, json={"ok": True}),
        ])
        api = ApiClient("https://api.example.com", provider="example", retry=context.retry)

        response = await api.get("/things")

        assert response.json() == {"ok": True}
        assert route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_errors_are_transient(self, context):
        respx.get("https://api.example.com/things").mock(side_effect=httpx.ConnectError("reset"))
        api = ApiClient("https://api.example.com", provider="example", retry=context.retry)

        with pytest.raises(TransientProviderError):
            await api.get("/things")

    @pytest.mark.asyncio
    @respx.mock
    async def test_allowed_status_is_returned(self, context):
        respx.delete("https://api.example.com/things/1").mock(return_value=httpx.Response(404))
        api = ApiClient("https://api.example.com", provider="example", retry=context.retry)

        response = await api.delete("/things/1", allow_status=(404,))

        assert response.status_code == 404


class TestSecretsVaultProvider:

    @pytest.mark.asyncio
    async def test_creates_vault_and_seeds_jwt_secret(self, context, store):
        outcome = await SecretsVaultProvider(context).provision(request_for())

        assert outcome.result.created is True
        assert outcome.result.resource_name == "acme-dev"
        assert len(outcome.compensations) == 1
        jwt = await store.read_field("acme-dev", "Auth", "Secrets", "jwt_secret")
        assert len(jwt) == 64

        await outcome.compensations[0].execute()
        assert not await store.vault_exists("acme-dev")

    @pytest.mark.asyncio
    async def test_rerun_reuses_vault_and_keeps_secret(self, context, store):
        provider = SecretsVaultProvider(context)
        await provider.provision(request_for())
        jwt = await store.read_field("acme-dev", "Auth", "Secrets", "jwt_secret")

        outcome = await provider.provision(request_for(force=True))

        assert outcome.result.created is False
        assert outcome.compensations == []
        assert await store.read_field("acme-dev", "Auth", "Secrets", "jwt_secret") == jwt

    @pytest.mark.asyncio
    async def test_dry_run_touches_nothing(self, context, store):
        outcome = await SecretsVaultProvider(context).provision(request_for(dry_run=True))

        assert outcome.result.resource_name == "acme-dev"
        assert outcome.compensations == []
        assert store.vaults == {}

    @pytest.mark.asyncio
    async def test_list_and_delete(self, context, store):
        await store.create_vault("acme-dev")
        await store.create_vault("other-prod")
        provider = SecretsVaultProvider(context)

        instances = await provider.list_instances(CleanupFilter(project="acme"))

        assert [(i.id, i.environment) for i in instances] == [("acme-dev", "dev")]
        outcome = await provider.delete_instance("acme-dev")
        assert outcome.success
        assert not await store.vault_exists("acme-dev")


class TestDatabaseProvider:

    def test_pick_connection_string(self):
        body = {"project": {"id": "p"}, "connection_uris": [{"connection_uri": "postgresql://a@b/neondb"}]}
        assert pick_connection_string(body) == "postgresql://a@b/neondb"
        assert pick_connection_string({"uri": "mysql://nope"}) == ""

    @pytest.mark.asyncio
    @respx.mock
    async def test_creates_project_and_records_results(self, context, store):
        respx.get(f"{NEON}/projects").mock(return_value=httpx.Response(200, json={"projects": []}))
        create = respx.post(f"{NEON}/projects").mock(return_value=httpx.Response(201, json={
            "project": {"id": "proj-1", "name": "acme-dev"},
            "connection_uris": [{"connection_uri": "postgresql://u:p@ep-1.neon.tech/neondb"}],
        }))

        outcome = await DatabaseProvider(context).provision(request_for())

        assert outcome.result.created is True
        assert outcome.result.resource_id == "proj-1"
        assert len(outcome.compensations) == 1
        assert create.calls.last.request.headers["Authorization"] == "Bearer neon-key"
        assert json.loads(create.calls.last.request.content)["project"]["region_id"] == "aws-us-east-1"
        assert await store.read_field("acme-dev", "Database", "Database", "database_url") == \
            "postgresql://u:p@ep-1.neon.tech/neondb"
        assert await store.read_field("acme-dev", "Database", "Connection", "postgres_host") == "ep-1.neon.tech"

    @pytest.mark.asyncio
    @respx.mock
    async def test_existing_project_is_reused_without_compensation(self, context, store):
        store.put("acme-dev", "Database", "Database", "database_url", "postgresql://u:p@ep-1.neon.tech/neondb")
        respx.get(f"{NEON}/projects").mock(return_value=httpx.Response(200, json={
            "projects": [{"id": "proj-1", "name": "acme-dev"}],
        }))
        create = respx.post(f"{NEON}/projects")

        outcome = await DatabaseProvider(context).provision(request_for())

        assert outcome.result.created is False
        assert outcome.compensations == []
        assert not create.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_project_on_second_page_is_found(self, context, store):
        store.put("acme-dev", "Database", "Database", "database_url", "postgresql://u:p@ep-1.neon.tech/neondb")
        filler = [{"id": f"proj-{i}", "name": f"other-{i}"} for i in range(100)]
        second = respx.get(f"{NEON}/projects", params={"cursor": "next-1"}).mock(
            return_value=httpx.Response(200, json={"projects": [{"id": "proj-acme", "name": "acme-dev"}]}))
        first = respx.get(f"{NEON}/projects", params={"limit": "100"}).mock(
            return_value=httpx.Response(200, json={"projects": filler, "pagination": {"cursor": "next-1"}}))
        create = respx.post(f"{NEON}/projects")

        outcome = await DatabaseProvider(context).provision(request_for())

        assert first.call_count == 1
        assert second.call_count == 1
        assert outcome.result.resource_id == "proj-acme"
        assert outcome.result.created is False
        assert not create.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_force_deletes_then_creates(self, context):
        respx.get(f"{NEON}/projects").mock(return_value=httpx.Response(200, json={
            "projects": [{"id": "old", "name": "acme-dev"}],
        }))
        delete = respx.delete(f"{NEON}/projects/old").mock(return_value=httpx.Response(200, json={}))
        respx.post(f"{NEON}/projects").mock(return_value=httpx.Response(201, json={
            "project": {"id": "new", "name": "acme-dev"},
            "connection_uris": [{"connection_uri": "postgresql://u:p@ep-2.neon.tech/neondb"}],
        }))

        outcome = await DatabaseProvider(context).provision(request_for(force=True))

        assert delete.called
        assert outcome.result.created is True
        assert outcome.result.resource_id == "new"
        assert len(outcome.compensations) == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejection_carries_provider_name(self, context):
        respx.get(f"{NEON}/projects").mock(return_value=httpx.Response(401, json={"message": "bad key"}))

        with pytest.raises(ProviderRejectedError) as exc_info:
            await DatabaseProvider(context).provision(request_for())

        assert exc_info.value.provider == "database"
        assert exc_info.value.compensations == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_failure_after_create_carries_compensation(self, context, store):
        respx.get(f"{NEON}/projects").mock(return_value=httpx.Response(200, json={"projects": []}))
        respx.post(f"{NEON}/projects").mock(return_value=httpx.Response(201, json={
            "project": {"id": "proj-1", "name": "acme-dev"},
        }))
        respx.get(f"{NEON}/projects/proj-1/connection_uri").mock(return_value=httpx.Response(200, json={}))
        delete = respx.delete(f"{NEON}/projects/proj-1").mock(return_value=httpx.Response(200, json={}))

        with pytest.raises(ProviderRejectedError) as exc_info:
            await DatabaseProvider(context).provision(request_for())

        assert len(exc_info.value.compensations) == 1
        await exc_info.value.compensations[0].execute()
        assert delete.called

    @pytest.mark.asyncio
    async def test_missing_credentials(self, context, credentials_env):
        credentials_env.pop("NEON_API_KEY")

        with pytest.raises(MissingCredentialsError) as exc_info:
            await DatabaseProvider(context).check_credentials()

        assert exc_info.value.missing == ["NEON_API_KEY"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_list_filters_by_project(self, context):
        respx.get(f"{NEON}/projects").mock(return_value=httpx.Response(200, json={"projects": [
            {"id": "a", "name": "acme-dev", "created_at": "2024-01-01"},
            {"id": "b", "name": "acme-prod"},
            {"id": "c", "name": "other-dev"},
        ]}))

        instances = await DatabaseProvider(context).list_instances(CleanupFilter(project="acme", env="prod"))

        assert [(i.id, i.name, i.environment) for i in instances] == [("b", "acme-prod", "prod")]

    @pytest.mark.asyncio
    @respx.mock
    async def test_delete_failure_is_an_outcome(self, context):
        respx.delete(f"{NEON}/projects/a").mock(return_value=httpx.Response(403, json={"message": "no"}))

        outcome = await DatabaseProvider(context).delete_instance("a")

        assert outcome.success is False
        assert "403" in outcome.error


class TestBackendHostProvider:

    def test_helpers(self):
        assert api_base("https://captain.example.com/") == CAPTAIN
        assert api_base("https://captain.example.com/api/v2") == CAPTAIN
        assert app_url("https://captain.example.com", "acme-api-dev") == "https://acme-api-dev.example.com"
        assert merge_env_vars([{"key": "A", "value": "1"}], {"A": "2", "B": "3"}) == [
            {"key": "A", "value": "2"}, {"key": "B", "value": "3"},
        ]
        body = build_update_body("app", {"instanceCount": 2}, envVars=[])
        assert body["appName"] == "app"
        assert body["instanceCount"] == 2
        assert body["appDeployTokenConfig"] == {"enabled": False}

    def test_https_succeeded(self):
        assert https_succeeded(httpx.Response(200, json={"status": 100}))
        assert https_succeeded(httpx.Response(200, text="done"))
        assert not https_succeeded(httpx.Response(200, json={"status": 1000}))
        assert not https_succeeded(httpx.Response(404))

    @pytest.mark.asyncio
    @respx.mock
    async def test_creates_app_and_wires_vault_access(self, context, store):
        login = respx.post(f"{CAPTAIN}/login").mock(return_value=httpx.Response(200, json={
            "status": 100, "data": {"token": "captain-token"},
        }))
        app = {"appName": "acme-api-dev", "envVars": []}
        with_token = {**app, "appDeployTokenConfig": {"enabled": True, "appDeployToken": "deploy-token"}}
        with_env = {**with_token, "envVars": [
            {"key": "OP_SERVICE_ACCOUNT_TOKEN", "value": "ops_token_1"},
            {"key": "OP_VAULT", "value": "acme-dev"},
        ]}
        listing = respx.get(f"{APPS}/").mock(side_effect=[
            httpx.Response(200, json={"status": 100, "data": {"appDefinitions": []}}),
            httpx.Response(200, json={"status": 100, "data": {"appDefinitions": [app]}}),
            httpx.Response(200, json={"status": 100, "data": {"appDefinitions": [with_token]}}),
            httpx.Response(200, json={"status": 100, "data": {"appDefinitions": [with_token]}}),
            httpx.Response(200, json={"status": 100, "data": {"appDefinitions": [with_env]}}),
        ])
        register = respx.post(f"{APPS}/register/").mock(return_value=httpx.Response(200, json={"status": 100}))
        https = respx.post(f"{APPS}/enablebasedomainssl/").mock(return_value=httpx.Response(200, json={"status": 100}))
        update = respx.post(f"{APPS}/update/").mock(return_value=httpx.Response(200, json={"status": 100}))

        outcome = await BackendHostProvider(context).provision(request_for())

        assert login.calls.last.request.headers["x-namespace"] == "captain"
        assert listing.calls.last.request.headers["x-captain-auth"] == "captain-token"
        assert register.called and https.called
        assert update.call_count == 2
        assert outcome.result.created is True
        assert outcome.result.values["api_url"] == "https://acme-api-dev.example.com"
        assert len(outcome.compensations) == 1
        assert await store.read_field("acme-dev", "BackendHost", "Deployment", "app_token") == "deploy-token"
        assert await store.read_field("acme-dev", "BackendHost", "ServiceAccount", "token") == "ops_token_1"
        assert store.service_accounts[0].startswith("acme-sa-dev-caprover-v")

    @pytest.mark.asyncio
    @respx.mock
    async def test_bad_password_is_rejected(self, context):
        respx.post(f"{CAPTAIN}/login").mock(return_value=httpx.Response(200, json={"status": 1106, "data": {}}))

        with pytest.raises(ProviderRejectedError) as exc_info:
            await BackendHostProvider(context).provision(request_for())

        assert "CAPROVER_PASSWORD" in str(exc_info.value)
        assert exc_info.value.provider == "backend-host"


class TestFrontendHostProvider:

    @pytest.mark.asyncio
    @respx.mock
    async def test_creates_site_under_team(self, context, store, credentials_env):
        credentials_env["NETLIFY_TEAM_SLUG"] = "acme-team"
        respx.get(f"{NETLIFY}/sites", params={"per_page": "100"}).mock(return_value=httpx.Response(200, json=[]))
        create = respx.post(f"{NETLIFY}/acme-team/sites").mock(return_value=httpx.Response(201, json={
            "id": "site-1", "name": "acme-frontend-dev", "ssl_url": "https://acme-frontend-dev.netlify.app",
        }))

        outcome = await FrontendHostProvider(context).provision(request_for())

        assert create.called
        assert outcome.result.values["app_url"] == "https://acme-frontend-dev.netlify.app"
        assert await store.read_field("acme-dev", "FrontendHost", "Site", "site_id") == "site-1"
        assert await store.read_field("acme-dev", "FrontendHost", "Credentials", "token") == "netlify-token"

    @pytest.mark.asyncio
    @respx.mock
    async def test_existing_site_is_reused(self, context):
        respx.get(f"{NETLIFY}/sites", params={"per_page": "100"}).mock(return_value=httpx.Response(200, json=[
            {"id": "site-1", "name": "acme-frontend-prod", "url": "http://acme-frontend-prod.netlify.app"},
        ]))

        outcome = await FrontendHostProvider(context).provision(request_for("prod"))

        assert outcome.result.created is False
        assert outcome.compensations == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_sites_are_read_until_a_short_page(self, context):
        filler = [{"id": f"site-{i}", "name": f"other-{i}"} for i in range(100)]
        respx.get(f"{NETLIFY}/sites", params={"page": "2"}).mock(return_value=httpx.Response(200, json=[
            {"id": "site-acme", "name": "acme-frontend-dev", "ssl_url": "https://acme-frontend-dev.netlify.app"},
        ]))
        respx.get(f"{NETLIFY}/sites", params={"page": "1"}).mock(return_value=httpx.Response(200, json=filler))
        create = respx.post(f"{NETLIFY}/sites")

        outcome = await FrontendHostProvider(context).provision(request_for())

        assert outcome.result.resource_id == "site-acme"
        assert outcome.result.created is False
        assert not create.called


class TestEmailProvider:

    @pytest.mark.asyncio
    @respx.mock
    async def test_creates_sending_key(self, context, store):
        respx.get(f"{RESEND}/api-keys").mock(return_value=httpx.Response(200, json={"data": []}))
        create = respx.post(f"{RESEND}/api-keys").mock(return_value=httpx.Response(201, json={
            "id": "key-1", "token": "re_sending",
        }))

        outcome = await EmailProvider(context).provision(request_for("prod"))

        assert create.called
        assert outcome.result.values["email_from"] == "no-reply@acme.com"
        assert await store.read_field("acme-prod", "Email", "Credentials", "api_key") == "re_sending"

    @pytest.mark.asyncio
    @respx.mock
    async def test_existing_key_without_token_needs_force(self, context):
        respx.get(f"{RESEND}/api-keys").mock(return_value=httpx.Response(200, json={"data": [
            {"id": "key-1", "name": "acme-dev"},
        ]}))

        with pytest.raises(ConfigError) as exc_info:
            await EmailProvider(context).provision(request_for())

        assert "--force" in str(exc_info.value)
        assert exc_info.value.provider == "email"

    @pytest.mark.asyncio
    @respx.mock
    async def test_existing_key_with_token_in_vault_is_reused(self, context, store):
        store.put("acme-dev", "Email", "Credentials", "api_key", "re_saved")
        respx.get(f"{RESEND}/api-keys").mock(return_value=httpx.Response(200, json={"data": [
            {"id": "key-1", "name": "acme-dev"},
        ]}))

        outcome = await EmailProvider(context).provision(request_for())

        assert outcome.result.created is False
        assert outcome.result.values["api_key"] == "re_saved"


class TestSourceControlProvider:

    def test_ci_secret_names(self):
        assert ci_secret_names("prod") == ["OP_SERVICE_ACCOUNT_TOKEN_PROD", "OP_VAULT_PROD"]

    @pytest.mark.asyncio
    async def test_creates_private_repository(self, context, github, store):
        outcome = await SourceControlProvider(context, gh=github).provision(request_for())

        assert "octo/acme" in github.repos
        assert outcome.result.created is True
        assert await store.read_field("acme-dev", "SourceControl", "Repository", "repo_url") == \
            "https://github.com/octo/acme"

    @pytest.mark.asyncio
    async def test_force_never_recreates_repository(self, context, github):
        github.repos["octo/acme"] = {"OP_VAULT_DEV": "acme-dev"}

        outcome = await SourceControlProvider(context, gh=github).provision(request_for(force=True))

        assert outcome.result.created is False
        assert outcome.compensations == []
        assert github.repos["octo/acme"] == {"OP_VAULT_DEV": "acme-dev"}

    @pytest.mark.asyncio
    async def test_check_credentials_uses_gh_auth(self, context, github):
        github.signed_in = False

        with pytest.raises(ConfigError):
            await SourceControlProvider(context, gh=github).check_credentials()
