from sqlalchemy import BigInteger, Column, Integer, String, UniqueConstraint

from src.db.base import Base


class BoardColumn(Base):
    """Место карточки в колонке; карточка стоит не более чем в одной колонке"""

    __tablename__ = "board_columns"

    user_id = Column(String(64), primary_key=True)
    card_id = Column(String(128), primary_key=True)
    column_id = Column(String(16), nullable=False)
    sort_index = Column(Integer, nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "column_id", "sort_index", name="uq_board_columns_position"),)


class FloatingCard(Base):
    """Карточка, свободно закрепленная на поле"""

    __tablename__ = "floating_cards"

    user_id = Column(String(64), primary_key=True)
    card_id = Column(String(128), primary_key=True)
    x = Column(Integer, nullable=False, default=24)
    y = Column(Integer, nullable=False, default=120)
    sway_offset_ms = Column(Integer, nullable=False, default=0)


class BoardVersion(Base):
    """Счетчик версии доски пользователя для оптимистичной блокировки"""

    __tablename__ = "board_versions"

    user_id = Column(String(64), primary_key=True)
    version = Column(BigInteger, nullable=False, default=0)
    updated_at_ms = Column(BigInteger, nullable=False, default=0)
