from typing import Any

from pydantic import BaseModel, Field


class MediaUploadRequest(BaseModel):
    mime: Any = None
    data_base64: Any = Field(None, alias="dataBase64")
    id: Any = None
    name: Any = None
    created_at: Any = Field(None, alias="createdAt")

    class Config:
        populate_by_name = True
