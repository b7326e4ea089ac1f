"""1Password secret store backed by the `op` CLI."""
import asyncio
import json
import logging
import os
import subprocess
import tempfile
from typing import Dict, List, Optional, Sequence

from ...domains.errors import ConfigError, SecretStoreError
from ...domains.models import ItemField, ItemSection
from .store import SecretStore, infer_field_type

logger = logging.getLogger(__name__)


def _slug(label: str) -> str:
    return "".join(c if c.isalnum() else "_" for c in label.lower())


def build_item_template(item: str, sections: Sequence[ItemSection],
                        category: str = "SECURE_NOTE") -> Dict:
    """Build the JSON template `op item create --template` expects."""
    template = {"title": item, "category": category, "sections": [], "fields": []}
    for section in sections:
        section_id = _slug(section.label)
        template["sections"].append({"id": section_id, "label": section.label})
        for field in section.fields:
            template["fields"].append({
                "id": f"{section_id}_{_slug(field.label)}",
                "label": field.label,
                "type": infer_field_type(field),
                "value": field.value,
                "section": {"id": section_id},
            })
    return template


def merge_field(template: Dict, section: str, field: ItemField) -> Dict:
    """Set one field on item JSON from `op item get`, adding its section when missing."""
    sections = template.setdefault("sections", [])
    fields = template.setdefault("fields", [])
    section_id = next((s.get("id") for s in sections if s.get("label") == section), None)
    if section_id is None:
        section_id = _slug(section)
        sections.append({"id": section_id, "label": section})

    for existing in fields:
        if existing.get("label") == field.label and (existing.get("section") or {}).get("id") == section_id:
            existing["value"] = field.value
            existing["type"] = infer_field_type(field)
            return template

    fields.append({
        "id": f"{section_id}_{_slug(field.label)}",
        "label": field.label,
        "type": infer_field_type(field),
        "value": field.value,
        "section": {"id": section_id},
    })
    return template


class OnePasswordSecretStore(SecretStore):
    """Drives the 1Password CLI. Each call runs `op` in a worker thread."""

    name = "1Password"

    def __init__(self, binary: str = "op"):
        self.binary = binary

    def _run_sync(self, args: List[str], input: Optional[str] = None) -> subprocess.CompletedProcess:
        cmd = [self.binary] + args
        logger.debug(f"$ {self.binary} {args[0]} {args[1] if len(args) > 1 else ''}")
        try:
            return subprocess.run(cmd, capture_output=True, text=True, input=input, check=False)
        except FileNotFoundError:
            raise ConfigError(
                "1Password CLI (op) not found.\n"
                "Install it from https://developer.1password.com/docs/cli/get-started/ "
                "and sign in with: eval $(op signin)"
            )

    async def _run(self, args: List[str], input: Optional[str] = None) -> subprocess.CompletedProcess:
        return await asyncio.to_thread(self._run_sync, args, input)

    async def _check(self, args: List[str], what: str) -> str:
        result = await self._run(args)
        if result.returncode != 0:
            raise SecretStoreError(f"Failed to {what}: {result.stderr.strip() or result.stdout.strip()}")
        return result.stdout

    async def vault_exists(self, vault: str) -> bool:
        result = await self._run(["vault", "get", vault, "--format", "json"])
        return result.returncode == 0

    async def create_vault(self, vault: str) -> None:
        await self._check(["vault", "create", vault, "--format", "json"], f"create vault '{vault}'")
        logger.info(f"  Created vault: {vault}")

    async def delete_vault(self, vault: str) -> None:
        await self._check(["vault", "delete", vault], f"delete vault '{vault}'")
        logger.info(f"  Deleted vault: {vault}")

    async def list_vaults(self) -> List[Dict[str, str]]:
        out = await self._check(["vault", "list", "--format", "json"], "list vaults")
        try:
            vaults = json.loads(out or "[]")
        except json.JSONDecodeError as e:
            raise SecretStoreError(f"Unexpected output from 'op vault list': {e}")
        return [
            {"id": v.get("id", ""), "name": v.get("name", ""), "created_at": v.get("created_at")}
            for v in vaults
        ]

    async def item_exists(self, vault: str, item: str) -> bool:
        result = await self._run(["item", "get", item, "--vault", vault, "--format", "json"])
        return result.returncode == 0

    async def _check_with_template(self, args: List[str], template: Dict, what: str) -> str:
        """Run `op` with the item JSON in a private temporary file; field values never reach argv."""
        fd, path = tempfile.mkstemp(prefix="op-item-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(template, f)
            return await self._check(args + ["--template", path, "--format", "json"], what)
        finally:
            os.unlink(path)

    async def create_item(self, vault: str, item: str, sections: Sequence[ItemSection]) -> None:
        await self._check_with_template(["item", "create", "--vault", vault], build_item_template(item, sections),
                                        f"create item '{item}' in vault '{vault}'")

    async def read_field(self, vault: str, item: str, section: str, field: str) -> Optional[str]:
        ref = f"op://{vault}/{item}/{section}/{field}" if section else f"op://{vault}/{item}/{field}"
        return await self.read_reference(ref)

    async def upsert_field(self, vault: str, item: str, section: str, field: ItemField) -> None:
        what = f"set field '{section}.{field.label}' on '{vault}/{item}'"
        out = await self._check(["item", "get", item, "--vault", vault, "--format", "json"], what)
        try:
            template = json.loads(out or "{}")
        except json.JSONDecodeError as e:
            raise SecretStoreError(f"Unexpected output from 'op item get': {e}")
        await self._check_with_template(["item", "edit", item, "--vault", vault],
                                        merge_field(template, section, field), what)

    async def delete_item(self, vault: str, item: str) -> None:
        await self._check(["item", "delete", item, "--vault", vault], f"delete item '{vault}/{item}'")

    async def whoami(self) -> str:
        result = await self._run(["whoami", "--format", "json"])
        if result.returncode != 0:
            raise ConfigError(
                "Not signed in to 1Password.\n"
                "Sign in with: eval $(op signin)\n"
                "or export OP_SERVICE_ACCOUNT_TOKEN for a service account."
            )
        try:
            info = json.loads(result.stdout or "{}")
        except json.JSONDecodeError:
            return result.stdout.strip()
        return info.get("email") or info.get("user_uuid") or info.get("url") or "authenticated"

    async def read_reference(self, reference: str) -> Optional[str]:
        result = await self._run(["read", reference])
        if result.returncode != 0:
            logger.debug(f"Could not read {reference}")
            return None
        value = result.stdout.rstrip("\n")
        return value or None

    @property
    def supports_service_accounts(self) -> bool:
        return True

    async def create_service_account(self, name: str, vaults: Sequence[str],
                                     permissions: Sequence[str] = ("read_items",)) -> str:
        args = ["service-account", "create", name]
        for vault in vaults:
            args += ["--vault", f"{vault}:{','.join(permissions)}"]
        args.append("--raw")
        token = (await self._check(args, f"create service account '{name}'")).strip()
        if not token.startswith("ops_"):
            raise SecretStoreError(f"Unexpected token format returned for service account '{name}'")
        logger.info(f"  Created service account: {name}")
        return token
