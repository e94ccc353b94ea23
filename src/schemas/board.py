from typing import Any

from pydantic import BaseModel, Field


class BoardWrite(BaseModel):
    """Full board replacement; ``expectedVersion`` (or ``baseVersion``) enables the conflict check"""
    state: Any = None
    expected_version: Any = Field(None, alias="expectedVersion")
    base_version: Any = Field(None, alias="baseVersion")

    class Config:
        populate_by_name = True


class HistoryAppend(BaseModel):
    entry: Any = None
