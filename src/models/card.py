from sqlalchemy import BigInteger, Boolean, Column, Index, Integer, String, Text

from src.db.base import Base


class Card(Base):
    """Модель карточки; status материализован для запросов, источник истины - board_columns"""

    __tablename__ = "cards"

    user_id = Column(String(64), primary_key=True)
    id = Column(String(128), primary_key=True)
    title = Column(String(512), nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    images_json = Column(Text, nullable=False, default="[]")  # только ссылки на медиа
    checklist_json = Column(Text, nullable=False, default="[]")
    created_by = Column(String(64), nullable=True)
    is_favorite = Column(Boolean, nullable=False, default=False)
    created_at_ms = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, default="queue")
    urgency = Column(String(16), nullable=False, default="white")
    doing_started_at_ms = Column(BigInteger, nullable=True)
    doing_total_ms = Column(BigInteger, nullable=False, default=0)


class CardComment(Base):
    """Живой комментарий к карточке"""

    __tablename__ = "card_comments"

    user_id = Column(String(64), primary_key=True)
    card_id = Column(String(128), primary_key=True)
    id = Column(String(128), primary_key=True)
    author = Column(String(64), nullable=True)
    text = Column(Text, nullable=False, default="")
    images_json = Column(Text, nullable=False, default="[]")
    created_at_ms = Column(BigInteger, nullable=False)
    updated_at_ms = Column(BigInteger, nullable=False)

    __table_args__ = (Index("ix_card_comments_order", "user_id", "card_id", "created_at_ms", "id"),)


class CardCommentArchive(Base):
    """Архив комментариев: переполнение, удаление, удаление карточки"""

    __tablename__ = "card_comments_archive"

    archive_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    card_id = Column(String(128), nullable=False)
    id = Column(String(128), nullable=False)
    author = Column(String(64), nullable=True)
    text = Column(Text, nullable=False, default="")
    images_json = Column(Text, nullable=False, default="[]")
    created_at_ms = Column(BigInteger, nullable=False)
    updated_at_ms = Column(BigInteger, nullable=False)
    archived_at_ms = Column(BigInteger, nullable=False)
    archive_reason = Column(String(16), nullable=False, default="unknown")

    __table_args__ = (
        Index("ix_comments_archive_card", "user_id", "card_id", "archived_at_ms", "archive_id"),
        Index("ix_comments_archive_user", "user_id", "archived_at_ms", "archive_id"),
    )
