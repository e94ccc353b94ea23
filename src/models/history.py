from sqlalchemy import BigInteger, Column, Index, String, Text

from src.db.base import Base


class HistoryEntry(Base):
    """Запись журнала действий на доске"""

    __tablename__ = "history_entries"

    user_id = Column(String(64), primary_key=True)
    id = Column(String(64), primary_key=True)
    at_ms = Column(BigInteger, nullable=False)
    text = Column(Text, nullable=False, default="")
    card_id = Column(String(128), nullable=True)
    kind = Column(String(16), nullable=True)
    meta_json = Column(Text, nullable=True)

    __table_args__ = (Index("ix_history_entries_order", "user_id", "at_ms", "id"),)
