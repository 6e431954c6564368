"""Tool catalog endpoints. Reads need any user token; writes need admin."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Body, Depends, HTTPException

from toolshed.models import CatalogUpdate
from toolshed.security import Principal, require_admin, require_principal
from toolshed.toolboxes_api import dump

if TYPE_CHECKING:
    from toolshed.catalog import ToolCatalog

router = APIRouter(prefix="/catalog", tags=["catalog"])

_catalog: "ToolCatalog | None" = None


def configure(catalog: "ToolCatalog") -> None:
    global _catalog
    _catalog = catalog


def _service() -> "ToolCatalog":
    if _catalog is None:
        raise HTTPException(status_code=503, detail="Catalog not configured")
    return _catalog


@router.get("")
async def list_catalog(enabled_only: bool = False, _: Principal = Depends(require_principal)):
    return {"tools": [dump(e) for e in await _service().list(enabled_only=enabled_only)]}


@router.get("/{catalog_id}")
async def get_catalog_entry(catalog_id: str, _: Principal = Depends(require_principal)):
    return dump(await _service().get(catalog_id))


@router.post("", status_code=201)
async def create_catalog_entry(body: dict = Body(...), _: Principal = Depends(require_admin)):
    # Validated inside ToolCatalog.create so schema errors map to 422 consistently.
    return dump(await _service().create(body))


@router.patch("/{catalog_id}")
async def update_catalog_entry(
    catalog_id: str, body: CatalogUpdate, _: Principal = Depends(require_admin)
):
    return dump(await _service().update(catalog_id, body))
