from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from src.api.dependencies.auth import get_board_store, get_current_user
from src.core.errors import bad_request
from src.schemas.card import BulkDelete, BulkMove, CardCreate, CardMove, CardPatch
from src.services.board_ops import (
    parse_bulk_operations,
    parse_column_id,
    parse_target_index,
    parse_urgency,
)
from src.services.board_store import BoardStore
from src.logs import debug_logger

router = APIRouter(
    prefix="/cards",
    tags=["cards"],
)


def _present_urgency(value) -> str:
    # Явно переданный null тоже ошибка
    return parse_urgency("" if value is None else value)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_card(
    body: CardCreate,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Create a card at the top of a column (``queue`` by default)

    The new card gets the next sequential id ``P-<n>`` and a ``create``
    history entry.
    """
    fields = body.model_dump(exclude_unset=True, by_alias=True)
    urgency = _present_urgency(fields["urgency"]) if "urgency" in fields else parse_urgency(None)
    column_id = parse_column_id(fields.get("columnId"), default=None if "columnId" in fields else "queue")
    result = await store.create_card(
        current_user,
        body.title,
        body.description,
        body.images,
        urgency,
        column_id,
        fields.get("index"),
    )
    debug_logger.debug(f"Карточка {result['card']['id']} создана в {column_id}")
    return {"ok": True, **result}


@router.post("/bulk/move")
async def bulk_move_cards(
    body: BulkMove,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Move up to 200 cards in one write

    Without ``continueOnError`` the first failing move aborts the whole batch;
    with it the failures are reported in ``errors`` and the rest is applied.
    """
    moves = parse_bulk_operations(body.moves, "INVALID_MOVES")
    result = await store.bulk_move_cards(current_user["id"], moves, body.continue_on_error is True)
    return {"ok": True, **result}


@router.post("/bulk/delete")
async def bulk_delete_cards(
    body: BulkDelete,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    card_ids = parse_bulk_operations(body.card_ids, "INVALID_CARD_IDS")
    result = await store.bulk_delete_cards(current_user["id"], card_ids, body.continue_on_error is True)
    return {"ok": True, **result}


@router.get("/{card_id}")
async def get_card(
    card_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    result = await store.get_card(current_user["id"], card_id)
    return {"ok": True, **result}


@router.patch("/{card_id}")
async def patch_card(
    card_id: str,
    body: CardPatch,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Update title, description, images, checklist, urgency or the favourite flag
    """
    patch = body.model_dump(exclude_unset=True, by_alias=True)
    if not patch:
        # Несуществующая карточка важнее пустого патча
        await store.get_card(current_user["id"], card_id)
        raise bad_request("EMPTY_PATCH")
    if "urgency" in patch:
        patch["urgency"] = _present_urgency(patch["urgency"])
    result = await store.patch_card(current_user["id"], card_id, patch)
    return {"ok": True, **result}


@router.delete("/{card_id}")
async def delete_card(
    card_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Delete a card; its comments go to the archive with reason ``card-delete``
    """
    result = await store.delete_card(current_user["id"], card_id)
    return {"ok": True, **result}


@router.api_route("/{card_id}/move", methods=["POST", "PATCH"])
async def move_card(
    card_id: str,
    body: CardMove,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Move a card to a column position; without ``toIndex`` it goes to the end

    Leaving ``doing`` adds the elapsed time to ``doingTotalMs``; entering it
    starts the timer.
    """
    to_column = parse_column_id(body.to_column_id)
    to_index = parse_target_index(body.to_index)
    result = await store.move_card(current_user["id"], card_id, to_column, to_index)
    return {"ok": True, **result}
