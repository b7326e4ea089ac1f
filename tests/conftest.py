"""Shared fixtures: an in-memory secret store and a provider context around it."""
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from saas_provisioner.domains.errors import ConfigError
from saas_provisioner.domains.models import ItemField, ItemSection
from saas_provisioner.domains.retry import RetryPolicy
from saas_provisioner.providers.base import ProviderContext
from saas_provisioner.secrets.domains import preferences
from saas_provisioner.secrets.domains.store import SecretStore
from saas_provisioner.secrets.workflows.credentials import CredentialResolver, clear_cache


class InMemorySecretStore(SecretStore):
    """Dict-backed store: {vault: {item: {(section, field): value}}}."""

    name = "memory"

    def __init__(self, signed_in: bool = True, service_accounts: bool = True):
        self.vaults: Dict[str, Dict[str, Dict[tuple, str]]] = {}
        self.signed_in = signed_in
        self.service_accounts: List[str] = []
        self._supports_service_accounts = service_accounts

    async def vault_exists(self, vault: str) -> bool:
        return vault in self.vaults

    async def create_vault(self, vault: str) -> None:
        self.vaults.setdefault(vault, {})

    async def delete_vault(self, vault: str) -> None:
        self.vaults.pop(vault, None)

    async def list_vaults(self) -> List[Dict[str, str]]:
        return [{"id": f"id-{name}", "name": name} for name in self.vaults]

    async def item_exists(self, vault: str, item: str) -> bool:
        return item in self.vaults.get(vault, {})

    async def create_item(self, vault: str, item: str, sections: Sequence[ItemSection]) -> None:
        fields = self.vaults.setdefault(vault, {}).setdefault(item, {})
        for section in sections:
            for field in section.fields:
                fields[(section.label, field.label)] = field.value

    async def read_field(self, vault: str, item: str, section: str, field: str) -> Optional[str]:
        return self.vaults.get(vault, {}).get(item, {}).get((section, field))

    async def upsert_field(self, vault: str, item: str, section: str, field: ItemField) -> None:
        self.vaults[vault][item][(section, field.label)] = field.value

    async def delete_item(self, vault: str, item: str) -> None:
        self.vaults.get(vault, {}).pop(item, None)

    async def whoami(self) -> str:
        if not self.signed_in:
            raise ConfigError("Not signed in")
        return "tester@example.com"

    async def read_reference(self, reference: str) -> Optional[str]:
        vault, item, section, field = reference[len("op://"):].split("/")
        return await self.read_field(vault, item, section, field)

    @property
    def supports_service_accounts(self) -> bool:
        return self._supports_service_accounts

    async def create_service_account(self, name: str, vaults: Sequence[str],
                                     permissions: Sequence[str] = ("read_items",)) -> str:
        if not self._supports_service_accounts:
            raise ConfigError("memory cannot create service accounts")
        self.service_accounts.append(name)
        return f"ops_token_{len(self.service_accounts)}"

    def put(self, vault: str, item: str, section: str, field: str, value: str) -> None:
        self.vaults.setdefault(vault, {}).setdefault(item, {})[(section, field)] = value


class FakeGitHub:
    """Stands in for GitHubCLI; records repositories and secrets."""

    def __init__(self, owner: str = "octo", signed_in: bool = True):
        self._owner = owner
        self.signed_in = signed_in
        self.repos: Dict[str, Dict[str, str]] = {}
        self.deleted_secrets: List[str] = []

    async def auth_status(self) -> None:
        if not self.signed_in:
            raise ConfigError("Not signed in to GitHub CLI.")

    async def owner(self) -> str:
        return self._owner

    async def repo_exists(self, repo: str) -> bool:
        return repo in self.repos

    async def create_repo(self, repo: str) -> None:
        self.repos[repo] = {}

    async def delete_repo(self, repo: str) -> None:
        self.repos.pop(repo, None)

    async def list_repos(self, owner: str) -> List[Dict[str, str]]:
        return [{"name": r.split("/")[1], "nameWithOwner": r} for r in self.repos]

    async def secret_names(self, repo: str) -> List[str]:
        return list(self.repos.get(repo, {}))

    async def set_secret(self, repo: str, name: str, value: str) -> None:
        self.repos.setdefault(repo, {})[name] = value

    async def delete_secret(self, repo: str, name: str) -> None:
        self.repos.get(repo, {}).pop(name, None)
        self.deleted_secrets.append(name)


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture(autouse=True)
def isolated_preferences(tmp_path, monkeypatch):
    """Keep preferences and the credential cache out of the real home directory."""
    fake_home = tmp_path / "home"
    fake_home.mkdir()
    monkeypatch.setenv("HOME", str(fake_home))
    monkeypatch.setattr(Path, "home", lambda: fake_home)

    config_dir = fake_home / ".config" / "saas-provisioner"
    monkeypatch.setattr(preferences, "PREFERENCES_DIR", config_dir)
    monkeypatch.setattr(preferences, "PREFERENCES_FILE", config_dir / "preferences.json")
    clear_cache()
    yield fake_home
    clear_cache()


@pytest.fixture
def store():
    return InMemorySecretStore()


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def credentials_env():
    return {
        "NEON_API_KEY": "neon-key",
        "CAPROVER_URL": "https://captain.example.com",
        "CAPROVER_PASSWORD": "captain-pass",
        "NETLIFY_TOKEN": "netlify-token",
        "RESEND_API_KEY": "re_master",
    }


@pytest.fixture
def context(store, credentials_env):
    resolver = CredentialResolver(store, master_vault=None, environ=credentials_env, use_master_vault=False)
    return ProviderContext(store=store, credentials=resolver, retry=RetryPolicy(sleep=no_sleep))
