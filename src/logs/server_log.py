import logging
import sys
import os
from pathlib import Path

# Директория для логов: LOG_DIR из окружения или рядом с модулем
log_dir = Path(os.getenv("LOG_DIR", str(Path(__file__).parent)))
log_dir.mkdir(parents=True, exist_ok=True)


def setup_logging(name: str = "api_logger", filename: str = "api_requests.log") -> logging.Logger:
    """Configure a logger that writes to a file in ``log_dir`` and to stdout."""
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    # Повторный импорт не должен дублировать обработчики
    if logger.handlers:
        return logger

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    file_handler = logging.FileHandler(log_dir / filename, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger


# Лог HTTP-запросов
api_logger = setup_logging()

# Лог хранилища: сборка мусора медиа, запись доски, ошибки ввода-вывода
storage_logger = setup_logging("storage_logger", "storage.log")
