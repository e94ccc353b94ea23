from src.core.config import Settings, get_settings
from src.core.clock import Clock, now_ms
from src.core.errors import ApiError, BoardVersionConflict
