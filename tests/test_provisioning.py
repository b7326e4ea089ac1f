"""End-to-end pipeline scenarios against in-memory providers."""
import asyncio

import pytest

from saas_provisioner.domains.errors import (
    MissingCredentialsError,
    ProviderRejectedError,
    ProvisioningError,
)
from saas_provisioner.domains.models import (
    Instance,
    ProviderName,
    ProviderResult,
    ProvisionFlags,
)
from saas_provisioner.providers.base import Provider
from saas_provisioner.providers.secrets_vault import SecretsVaultProvider
from saas_provisioner.providers.source_control import SourceControlProvider
from saas_provisioner.workflows.provisioning import Provisioner

P = ProviderName
INFRA = [P.DATABASE, P.BACKEND_HOST, P.FRONTEND_HOST, P.EMAIL]


class FakeProvider(Provider):
    """Keeps its resources in a shared dict and records every create/delete."""

    kind = "fake resource"

    def __init__(self, context, name, resources, log):
        super().__init__(context)
        self.name = name
        self.item = name.value
        self.resources = resources
        self.log = log
        self.fail_on = None  # (env, exception), raised before creating
        self.fail_after_create = None
        self.fail_delete = False
        self.missing_credentials = False
        self.delay = 0.0

    def placeholder(self, request):
        return ProviderResult(self.name, self.resource_name(request), values={"dry_run": "yes"})

    def resource_name(self, request):
        return f"{self.name.value}:{request.env}"

    async def _provision(self, request, compensations):
        name = self.resource_name(request)
        if self.fail_on and self.fail_on[0] == request.env:
            raise self.fail_on[1]
        if self.delay:
            await asyncio.sleep(self.delay)

        async def find():
            return name if name in self.resources else None

        async def create():
            self.resources[name] = True
            self.log.append(("create", name))
            return name

        async def destroy(resource):
            if self.fail_delete:
                raise RuntimeError(f"cannot delete {resource}")
            self.resources.pop(resource, None)
            self.log.append(("delete", resource))

        _, created = await self.reconcile(name, request, compensations, find, create, destroy)
        if self.fail_after_create:
            raise self.fail_after_create
        return ProviderResult(self.name, name, resource_id=name, created=created)

    async def check_credentials(self):
        if self.missing_credentials:
            raise MissingCredentialsError(self.name.value, ["SOME_KEY"])

    async def _list(self):
        return [Instance(id=name, name=name) for name in self.resources]

    async def _delete(self, instance_id):
        self.resources.pop(instance_id, None)
        return instance_id


@pytest.fixture
def resources():
    return {}


@pytest.fixture
def log():
    return []


@pytest.fixture
def providers(context, resources, log, github):
    built = {name: FakeProvider(context, name, resources, log) for name in INFRA}
    built[P.SECRETS_VAULT] = SecretsVaultProvider(context)
    built[P.SOURCE_CONTROL] = SourceControlProvider(context, gh=github)
    return built


@pytest.fixture
def provisioner(context, providers):
    return Provisioner(context, providers=providers)


def created(log):
    return [name for action, name in log if action == "create"]


def deleted(log):
    return [name for action, name in log if action == "delete"]


class TestProvisioningPipeline:

    @pytest.mark.asyncio
    async def test_fresh_run_creates_everything(self, provisioner, store, log, tmp_path):
        report = await provisioner.provision("Acme", ["dev"], INFRA, project_dir=tmp_path)

        assert sorted(created(log)) == sorted(f"{n.value}:dev" for n in INFRA)
        assert await store.vault_exists("acme-dev")
        assert set(report.results["dev"]) == {P.SECRETS_VAULT, *INFRA}
        assert all(result.created for result in report.results["dev"].values())

    @pytest.mark.asyncio
    async def test_rerun_reuses_everything(self, provisioner, log, tmp_path):
        await provisioner.provision("Acme", ["dev", "prod"], INFRA, project_dir=tmp_path)
        log.clear()

        report = await provisioner.provision("Acme", ["dev", "prod"], INFRA, project_dir=tmp_path)

        assert log == []
        assert not any(r.created for env in report.results.values() for r in env.values())

    @pytest.mark.asyncio
    async def test_permanent_failure_rolls_back_in_reverse(self, provisioner, providers, store, log, tmp_path):
        providers[P.BACKEND_HOST].fail_on = ("dev", ProviderRejectedError("quota exceeded"))

        with pytest.raises(ProvisioningError) as exc_info:
            await provisioner.provision("Acme", ["dev"], INFRA, project_dir=tmp_path)

        error = exc_info.value
        assert error.provider == "backend-host"
        assert isinstance(error.__cause__, ProviderRejectedError)
        assert error.failed_rollbacks == []
        # settle-all: the siblings of the failed provider still finished
        assert sorted(created(log)) == ["database:dev", "email:dev", "frontend-host:dev"]
        assert sorted(deleted(log)) == sorted(created(log))
        assert len(error.compensations) == 4
        assert error.compensations[0].provider == "secrets-vault"
        assert not await store.vault_exists("acme-dev")

    @pytest.mark.asyncio
    async def test_slow_sibling_settles_before_rollback(self, provisioner, providers, resources, log, tmp_path):
        providers[P.DATABASE].delay = 0.01
        providers[P.BACKEND_HOST].fail_on = ("dev", ProviderRejectedError("quota exceeded"))

        with pytest.raises(ProvisioningError) as exc_info:
            await provisioner.provision("Acme", ["dev"], [P.DATABASE, P.BACKEND_HOST], project_dir=tmp_path)

        assert "database" in [c.provider for c in exc_info.value.compensations]
        assert log == [("create", "database:dev"), ("delete", "database:dev")]
        assert resources == {}

    @pytest.mark.asyncio
    async def test_compensation_of_failed_provider_is_replayed(self, provisioner, providers, log, tmp_path):
        providers[P.DATABASE].fail_after_create = ProviderRejectedError("verification failed")

        with pytest.raises(ProvisioningError) as exc_info:
            await provisioner.provision("Acme", ["dev"], [P.DATABASE], project_dir=tmp_path)

        assert exc_info.value.provider == "database"
        assert log == [("create", "database:dev"), ("delete", "database:dev")]

    @pytest.mark.asyncio
    async def test_failure_in_prod_rolls_back_dev(self, provisioner, providers, store, resources, tmp_path):
        providers[P.EMAIL].fail_on = ("prod", ProviderRejectedError("forbidden"))

        with pytest.raises(ProvisioningError):
            await provisioner.provision("Acme", ["dev", "prod"], INFRA, project_dir=tmp_path)

        assert resources == {}
        assert store.vaults == {}

    @pytest.mark.asyncio
    async def test_reused_resources_survive_rollback(self, provisioner, providers, resources, tmp_path):
        resources["database:dev"] = True
        providers[P.EMAIL].fail_on = ("dev", ProviderRejectedError("forbidden"))

        with pytest.raises(ProvisioningError):
            await provisioner.provision("Acme", ["dev"], [P.DATABASE, P.EMAIL], project_dir=tmp_path)

        assert resources == {"database:dev": True}

    @pytest.mark.asyncio
    async def test_failed_rollbacks_are_reported(self, provisioner, providers, tmp_path):
        providers[P.DATABASE].fail_delete = True
        providers[P.FRONTEND_HOST].fail_on = ("dev", ProviderRejectedError("nope"))

        with pytest.raises(ProvisioningError) as exc_info:
            await provisioner.provision("Acme", ["dev"], [P.DATABASE, P.FRONTEND_HOST], project_dir=tmp_path)

        failed = exc_info.value.failed_rollbacks
        assert [c.provider for c in failed] == ["database"]

    @pytest.mark.asyncio
    async def test_preflight_aborts_before_any_mutation(self, provisioner, providers, store, log, tmp_path):
        providers[P.EMAIL].missing_credentials = True

        with pytest.raises(ProvisioningError) as exc_info:
            await provisioner.provision("Acme", ["dev"], INFRA, project_dir=tmp_path)

        assert isinstance(exc_info.value.__cause__, MissingCredentialsError)
        assert exc_info.value.compensations == []
        assert log == []
        assert store.vaults == {}

    @pytest.mark.asyncio
    async def test_force_recreates_infrastructure_but_not_vault(self, provisioner, store, log, tmp_path):
        await provisioner.provision("Acme", ["dev"], [P.DATABASE], project_dir=tmp_path)
        jwt = await store.read_field("acme-dev", "Auth", "Secrets", "jwt_secret")
        log.clear()

        report = await provisioner.provision("Acme", ["dev"], [P.DATABASE], flags=ProvisionFlags(force=True),
                                             project_dir=tmp_path)

        assert log == [("delete", "database:dev"), ("create", "database:dev")]
        assert report.results["dev"][P.SECRETS_VAULT].created is False
        assert await store.read_field("acme-dev", "Auth", "Secrets", "jwt_secret") == jwt

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, provisioner, providers, store, log, github, tmp_path):
        providers[P.EMAIL].missing_credentials = True
        project_dir = tmp_path / "app"
        project_dir.mkdir()

        report = await provisioner.provision("Acme", ["dev", "prod"], flags=ProvisionFlags(dry_run=True),
                                             export_env=True, project_dir=project_dir)

        assert log == []
        assert store.vaults == {}
        assert github.repos == {}
        assert list(project_dir.iterdir()) == []
        assert report.results["prod"][P.DATABASE].values == {"dry_run": "yes"}


class TestCIPhase:

    @pytest.mark.asyncio
    async def test_sets_secrets_and_copies_templates(self, provisioner, store, github, tmp_path):
        report = await provisioner.provision("Acme", ["dev", "prod"], [P.SOURCE_CONTROL], project_dir=tmp_path)

        assert report.repositories == ["octo/acme", "octo/acme"]
        secrets = github.repos["octo/acme"]
        assert secrets["OP_VAULT_DEV"] == "acme-dev"
        assert secrets["OP_VAULT_PROD"] == "acme-prod"
        assert secrets["OP_SERVICE_ACCOUNT_TOKEN_DEV"].startswith("ops_")
        assert len(store.service_accounts) == 2
        assert (tmp_path / ".github" / "workflows" / "deploy-dev.yml").exists()
        assert "acme" in (tmp_path / ".github" / "workflows" / "deploy-prod.yml").read_text()
        assert "{{PROJECT_NAME}}" not in (tmp_path / "scripts" / "validate-env.sh").read_text()

    @pytest.mark.asyncio
    async def test_rerun_keeps_existing_secrets(self, provisioner, store, github, tmp_path):
        await provisioner.provision("Acme", ["dev"], [P.SOURCE_CONTROL], project_dir=tmp_path)
        token = github.repos["octo/acme"]["OP_SERVICE_ACCOUNT_TOKEN_DEV"]

        await provisioner.provision("Acme", ["dev"], [P.SOURCE_CONTROL], project_dir=tmp_path)

        assert github.repos["octo/acme"]["OP_SERVICE_ACCOUNT_TOKEN_DEV"] == token
        assert len(store.service_accounts) == 1

    @pytest.mark.asyncio
    async def test_later_failure_removes_secrets_and_templates(self, provisioner, github, tmp_path, monkeypatch):
        async def broken_export(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr("saas_provisioner.workflows.provisioning.write_env_files", broken_export)

        with pytest.raises(ProvisioningError):
            await provisioner.provision("Acme", ["dev"], [P.SOURCE_CONTROL], export_env=True, project_dir=tmp_path)

        assert "octo/acme" not in github.repos
        assert set(github.deleted_secrets) == {"OP_SERVICE_ACCOUNT_TOKEN_DEV", "OP_VAULT_DEV"}
        assert not (tmp_path / ".github" / "workflows" / "deploy-dev.yml").exists()

    @pytest.mark.asyncio
    async def test_export_env_writes_files(self, provisioner, store, tmp_path):
        report = await provisioner.provision("Acme", ["dev"], [P.SECRETS_VAULT], export_env=True,
                                             project_dir=tmp_path)

        assert report.env_files == [tmp_path / ".env.server", tmp_path / ".env.client"]
        assert (tmp_path / ".env.server").read_text().startswith("JWT_SECRET=")
