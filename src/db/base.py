from sqlalchemy.orm import declarative_base

# Базовый класс для всех моделей
Base = declarative_base()
