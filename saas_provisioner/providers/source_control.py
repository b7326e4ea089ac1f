"""Source repository and CI secrets on GitHub through the `gh` CLI."""
import asyncio
import json
import logging
import subprocess
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
from ..domains.naming import repository_name
from .base import Provider

logger = logging.getLogger(__name__)


def ci_secret_names(env: str) -> List[str]:
    """Repository secrets the deploy workflows read for one environment."""
    suffix = env.upper()
    return [f"OP_SERVICE_ACCOUNT_TOKEN_{suffix}", f"OP_VAULT_{suffix}"]


class GitHubCLI:
    """Runs `gh` in a worker thread."""

    def __init__(self, binary: str = "gh"):
        self.binary = binary
        self._owner: Optional[str] = None

    def _run_sync(self, args: List[str], input: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run([self.binary] + args, capture_output=True, text=True, input=input, check=False)
        except FileNotFoundError:
            raise ConfigError("GitHub CLI (gh) not found. Install it from https://cli.github.com/ "
                              "and sign in with: gh auth login")

    async def run(self, args: List[str], input: Optional[str] = None) -> subprocess.CompletedProcess:
        logger.debug(f"$ {self.binary} {' '.join(args[:3])}")
        return await asyncio.to_thread(self._run_sync, args, input)

    async def check(self, args: List[str], what: str, input: Optional[str] = None) -> str:
        result = await self.run(args, input=input)
        if result.returncode != 0:
            raise ProviderRejectedError(f"Failed to {what}: {result.stderr.strip()}",
                                        provider=ProviderName.SOURCE_CONTROL.value)
        return result.stdout

    async def auth_status(self) -> None:
        result = await self.run(["auth", "status"])
        if result.returncode != 0:
            raise ConfigError("Not signed in to GitHub CLI.\nSign in with: gh auth login")

    async def owner(self) -> str:
        if self._owner is None:
            self._owner = (await self.check(["api", "user", "-q", ".login"], "determine GitHub user")).strip()
        return self._owner

    async def repo_exists(self, repo: str) -> bool:
        return (await self.run(["repo", "view", repo, "--json", "name"])).returncode == 0

    async def create_repo(self, repo: str) -> None:
        await self.check(["repo", "create", repo, "--private", "--description", "SaaS application"],
                         f"create repository {repo}")

    async def delete_repo(self, repo: str) -> None:
        await self.check(["repo", "delete", repo, "--yes"], f"delete repository {repo}")

    async def list_repos(self, owner: str) -> List[Dict[str, Any]]:
        out = await self.check(
            ["repo", "list", owner, "--json", "name,nameWithOwner,createdAt,visibility", "--limit", "1000"],
            f"list repositories of {owner}",
        )
        return json.loads(out or "[]")

    async def secret_names(self, repo: str) -> List[str]:
        out = await self.check(["secret", "list", "--repo", repo, "--json", "name"], f"list secrets of {repo}")
        return [secret.get("name") for secret in json.loads(out or "[]")]

    async def set_secret(self, repo: str, name: str, value: str) -> None:
        # value goes through stdin, never the command line
        await self.check(["secret", "set", name, "--repo", repo], f"set secret {name}", input=value)

    async def delete_secret(self, repo: str, name: str) -> None:
        await self.check(["secret", "delete", name, "--repo", repo], f"delete secret {name}")


class SourceControlProvider(Provider):
    """
    One private repository per project, shared by both environments.

    The repository holds the application's code, so --force never recreates
    it; only CI secrets and templates are replaced.
    """

    name = ProviderName.SOURCE_CONTROL
    item = "SourceControl"
    kind = "GitHub repository"

    def __init__(self, context, gh: Optional[GitHubCLI] = None):
        super().__init__(context)
        self.gh = gh or GitHubCLI()

    def resource_name(self, request: ProvisionRequest) -> str:
        return repository_name(request.project)

    def placeholder(self, request: ProvisionRequest) -> ProviderResult:
        repo = repository_name(request.project, "dry-run-owner")
        return ProviderResult(self.name, repo, resource_id=repo, values={
            "repo_name": repo,
            "repo_url": f"https://github.com/{repo}",
        })

    async def repository(self, project: str) -> str:
        return repository_name(project, await self.gh.owner())

    async def _provision(self, request: ProvisionRequest,
                         compensations: List[Compensation]) -> ProviderResult:
        repo = await self.repository(request.project)

        async def find():
            return repo if await self.gh.repo_exists(repo) else None

        async def create():
            await self.gh.create_repo(repo)
            return repo

        async def destroy(name):
            await self.gh.delete_repo(name)

        _, created = await self.reconcile(repo, request, compensations, find, create, destroy,
                                          recreate_on_force=False)
        url = f"https://github.com/{repo}"
        await self.write_result(request, [
            ItemSection("Repository", [
                ItemField("repo_name", repo, "STRING"),
                ItemField("repo_url", url, "URL"),
            ]),
        ])
        return ProviderResult(self.name, repo, resource_id=repo, created=created, values={
            "repo_name": repo,
            "repo_url": url,
        })

    async def check_credentials(self) -> None:
        await self.gh.auth_status()

    async def _list(self) -> List[Instance]:
        owner = await self.gh.owner()
        return [
            self.instance(repo.get("nameWithOwner"), repo.get("name"), metadata={
                "visibility": repo.get("visibility"),
            }, created_at=repo.get("createdAt"))
            for repo in await self.gh.list_repos(owner)
        ]

    async def _delete(self, instance_id: str) -> str:
        await self.gh.delete_repo(instance_id)
        return instance_id
