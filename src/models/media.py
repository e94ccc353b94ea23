from sqlalchemy import BigInteger, Column, Index, Integer, String

from src.db.base import Base


class MediaFile(Base):
    """Загруженный пользователем файл"""

    __tablename__ = "media_files"

    user_id = Column(String(64), primary_key=True)
    media_id = Column(String(160), primary_key=True)
    mime = Column(String(32), nullable=False)
    size = Column(BigInteger, nullable=False, default=0)
    created_at_ms = Column(BigInteger, nullable=False)
    updated_at_ms = Column(BigInteger, nullable=False)


class MediaLink(Base):
    """Ссылка на медиа из карточки, комментария или архива.

    comment_id пустой у карточки, id комментария у живого комментария
    и ``a:<archive_id>`` у архивной записи.
    """

    __tablename__ = "media_links"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    media_id = Column(String(160), nullable=False)
    owner_kind = Column(String(16), nullable=False)
    card_id = Column(String(128), nullable=False)
    comment_id = Column(String(160), nullable=False, default="")

    __table_args__ = (
        Index("ix_media_links_owner", "user_id", "owner_kind", "card_id", "comment_id"),
        Index("ix_media_links_media", "media_id"),
    )
