from src.db.base import Base
from src.db.database import build_engine, build_session_factory, init_db
