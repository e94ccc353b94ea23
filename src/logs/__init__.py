from src.logs.server_log import api_logger, storage_logger
from src.logs.debug_log import DebugLogger, debug_logger, log_function
