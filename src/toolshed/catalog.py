"""Tool Catalog — admin-curated, read-mostly registry of tool templates.

Consumers call ``resolve()`` to learn an entry's image, secret slots and
capabilities. Edits that would invalidate running instances or existing
credentials/permissions are refused while any live instance references
the entry.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from toolshed.errors import NotFoundError, ResourceConflictError, SchemaValidationError
from toolshed.models import CatalogEntry, CatalogResolution, CatalogUpdate
from toolshed.registry import ToolshedRegistry, new_id

logger = logging.getLogger(__name__)


def breaking_changes(current: CatalogEntry, proposed: CatalogEntry) -> list[str]:
    """Describe every way ``proposed`` would break instances of ``current``."""
    reasons: list[str] = []
    if proposed.image != current.image:
        reasons.append("image changed")
    if proposed.entrypoint != current.entrypoint:
        reasons.append("entrypoint changed")
    new_slots = {s.kind: s for s in proposed.secret_slots}
    for slot in current.secret_slots:
        replacement = new_slots.get(slot.kind)
        if replacement is None:
            reasons.append(f"secret slot {slot.kind!r} removed")
        elif replacement.env_var != slot.env_var:
            reasons.append(f"secret slot {slot.kind!r} retyped")
    new_caps = {c.name for c in proposed.capabilities}
    for cap in current.capabilities:
        if cap.name not in new_caps:
            reasons.append(f"capability {cap.name!r} removed")
    return reasons


class ToolCatalog:
    def __init__(self, registry: ToolshedRegistry):
        self.registry = registry

    async def get(self, catalog_id: str) -> CatalogEntry:
        entry = await self.registry.get_catalog_entry(catalog_id)
        if entry is None:
            raise NotFoundError(f"catalog entry {catalog_id} not found")
        return entry

    async def resolve(self, catalog_id: str) -> CatalogResolution:
        entry = await self.get(catalog_id)
        return CatalogResolution(
            image=entry.image,
            entrypoint=entry.entrypoint,
            secret_slots=entry.secret_slots,
            capabilities=entry.capabilities,
        )

    async def list(self, *, enabled_only: bool = False) -> list[CatalogEntry]:
        return await self.registry.list_catalog(enabled_only=enabled_only)

    async def create(self, data: dict) -> CatalogEntry:
        data = {**data, "catalog_id": data.get("catalog_id") or new_id()}
        try:
            entry = CatalogEntry.model_validate(data)
        except ValidationError as exc:
            raise SchemaValidationError(_first_error(exc)) from exc
        return await self.registry.create_catalog_entry(entry)

    async def update(self, catalog_id: str, changes: CatalogUpdate) -> CatalogEntry:
        current = await self.get(catalog_id)
        patch = changes.model_dump(exclude_unset=True)
        try:
            proposed = CatalogEntry.model_validate(
                {**current.model_dump(), **patch, "catalog_id": current.catalog_id}
            )
        except ValidationError as exc:
            raise SchemaValidationError(_first_error(exc)) from exc

        reasons = breaking_changes(current, proposed)
        if reasons:
            live = await self.registry.count_live_instances(catalog_id)
            if live:
                raise ResourceConflictError(
                    f"entry is used by {live} live instance(s); refusing: {', '.join(reasons)}"
                )
            proposed.schema_version = current.schema_version + 1

        if not await self.registry.update_catalog_entry(proposed):
            raise ResourceConflictError("catalog entry was changed concurrently")
        logger.info("Updated catalog entry %s (%s)", current.name, ", ".join(patch) or "no-op")
        return await self.get(catalog_id)

    async def seed_from_file(self, path: Path) -> int:
        """Create or update entries from a YAML list, keyed by ``name``."""
        with open(path) as f:
            raw = yaml.safe_load(f) or []
        if isinstance(raw, dict):
            raw = raw.get("tools", [])

        count = 0
        for item in raw:
            existing = await self.registry.get_catalog_entry_by_name(item["name"])
            if existing is None:
                await self.create(item)
            else:
                fields = {k: v for k, v in item.items() if k in CatalogUpdate.model_fields}
                await self.update(existing.catalog_id, CatalogUpdate(**fields))
            count += 1
        logger.info("Seeded %d catalog entries from %s", count, path)
        return count


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))
