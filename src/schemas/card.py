from typing import Any

from pydantic import BaseModel, Field


class CardCreate(BaseModel):
    """Schema for card creation"""
    title: Any = None
    description: Any = None
    images: Any = None
    urgency: Any = None
    column_id: Any = Field(None, alias="columnId")
    index: Any = None

    class Config:
        populate_by_name = True


class CardPatch(BaseModel):
    """Schema for card update; absent fields stay untouched"""
    title: Any = None
    description: Any = None
    images: Any = None
    checklist: Any = None
    urgency: Any = None
    is_favorite: Any = Field(None, alias="isFavorite")

    class Config:
        populate_by_name = True


class CardMove(BaseModel):
    to_column_id: Any = Field(None, alias="toColumnId")
    to_index: Any = Field(None, alias="toIndex")

    class Config:
        populate_by_name = True


class BulkMove(BaseModel):
    moves: Any = None
    continue_on_error: Any = Field(None, alias="continueOnError")

    class Config:
        populate_by_name = True


class BulkDelete(BaseModel):
    card_ids: Any = Field(None, alias="cardIds")
    continue_on_error: Any = Field(None, alias="continueOnError")

    class Config:
        populate_by_name = True
