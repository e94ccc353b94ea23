from typing import Any

from pydantic import BaseModel


class CommentCreate(BaseModel):
    """Schema for comment creation; ``text`` is rich HTML or plain text"""
    text: Any = None
    images: Any = None


class CommentPatch(BaseModel):
    """Schema for comment update; images are kept unless supplied"""
    text: Any = None
    images: Any = None
