from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from src.api.dependencies.auth import get_board_store, get_current_user
from src.api.dependencies.conditional import cached_json
from src.schemas.board import BoardWrite
from src.services.board_ops import parse_expected_version
from src.services.board_store import BoardStore

# Create router
router = APIRouter(prefix="/board", tags=["board"])


@router.get("")
async def read_board(
    request: Request,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Current board of the user with its version; 304 when the ETag matches
    """
    etag = await store.board_etag(current_user["id"])
    state, version = await store.read_board(current_user["id"])
    return cached_json(request, {"ok": True, "state": state, "version": version}, etag, "no-cache")


@router.put("")
async def write_board(
    body: BoardWrite,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Replace the whole board

    With ``expectedVersion`` the write fails with 409 BOARD_VERSION_CONFLICT
    when another write happened since that version was read.
    """
    fields = body.model_dump(exclude_unset=True, by_alias=True)
    raw_version = fields["baseVersion"] if "baseVersion" in fields else fields.get("expectedVersion")
    expected_version = parse_expected_version(raw_version)
    result = await store.write_board(current_user["id"], body.state, expected_version)
    return JSONResponse(
        {"ok": True, "version": result["version"], "updatedAt": result["updatedAt"]},
        headers={"ETag": await store.board_etag(current_user["id"]), "Cache-Control": "no-cache"},
    )
