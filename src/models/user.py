from sqlalchemy import BigInteger, Column, ForeignKey, Index, String, Text

from src.db.base import Base


class User(Base):
    """Модель пользователя"""

    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    login = Column(String(64), nullable=False)
    login_key = Column(String(64), nullable=False, unique=True)  # логин в нижнем регистре
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    created_at_ms = Column(BigInteger, nullable=False)

    # Поля профиля, все необязательные
    avatar_url = Column(Text, nullable=True)
    first_name = Column(String(96), nullable=True)
    last_name = Column(String(96), nullable=True)
    birth_date = Column(String(10), nullable=True)
    role = Column(String(128), nullable=True)
    city = Column(String(128), nullable=True)
    about = Column(Text, nullable=True)


class Session(Base):
    """Сессия входа; токен ссылается на нее по id"""

    __tablename__ = "sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at_ms = Column(BigInteger, nullable=False)
    expires_at_ms = Column(BigInteger, nullable=False)

    __table_args__ = (Index("ix_sessions_user", "user_id"),)
