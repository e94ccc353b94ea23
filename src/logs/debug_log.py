import logging
import sys
import os
import json
import inspect
import time
from functools import wraps
import traceback

from src.logs.server_log import log_dir

# Константы для цветного вывода
BLUE = '\033[94m'
GREEN = '\033[92m'
YELLOW = '\033[93m'
RED = '\033[91m'
PURPLE = '\033[95m'
CYAN = '\033[96m'
END = '\033[0m'

# Поля, которые никогда не попадают в лог целиком
SECRET_KEYS = {"password", "passwordhash", "password_hash", "token", "authorization"}
BULKY_KEYS = {"database64", "data_base64", "dataurl", "avatarurl", "state"}
MAX_LOGGED_CHARS = 1000


def _mask(key, value):
    lowered = str(key).lower()
    if lowered in SECRET_KEYS:
        return "***"
    if lowered in BULKY_KEYS and isinstance(value, str) and len(value) > 64:
        return f"<{len(value)} chars>"
    return value


def format_object(obj):
    """Render an argument or result for the debug log, masking secrets."""
    if isinstance(obj, dict):
        obj = {key: _mask(key, value) for key, value in obj.items()}
    if isinstance(obj, (list, dict, tuple, set)):
        try:
            text = json.dumps(obj, indent=2, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            text = str(obj)
    elif hasattr(obj, '__dict__'):
        text = str({key: value for key, value in vars(obj).items() if not key.startswith('_')})
    else:
        text = str(obj)
    if len(text) > MAX_LOGGED_CHARS:
        return text[:MAX_LOGGED_CHARS] + "... [обрезано]"
    return text


class DebugLogger:
    """Расширенный логгер для дебага с подробной информацией и цветным выводом"""

    def __init__(self, name="debug", level=None):
        if level is None:
            level = getattr(logging, os.getenv("DEBUG_LOG_LEVEL", "INFO").upper(), logging.INFO)
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)
        self.logger.propagate = False

        if self.logger.handlers:
            self.logger.handlers.clear()

        formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(message)s'
        )

        file_handler = logging.FileHandler(log_dir / "debug.log", encoding='utf-8')
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler.setLevel(level)

        self.logger.addHandler(file_handler)
        self.logger.addHandler(console_handler)

    def debug(self, message, *args, **kwargs):
        """Дебаг лог с информацией о вызывающем коде"""
        if not self.logger.isEnabledFor(logging.DEBUG):
            return
        frame = inspect.currentframe().f_back
        filename = frame.f_code.co_filename
        src_index = filename.find("src")
        if src_index >= 0:
            filename = filename[src_index:]
        caller_info = f"{BLUE}[{filename}:{frame.f_lineno} - {frame.f_code.co_name}]{END}"
        self.logger.debug(f"{caller_info} {message}", *args, **kwargs)

    def info(self, message, *args, **kwargs):
        self.logger.info(f"{GREEN}{message}{END}", *args, **kwargs)

    def warning(self, message, *args, **kwargs):
        self.logger.warning(f"{YELLOW}{message}{END}", *args, **kwargs)

    def error(self, message, *args, **kwargs):
        """Лог ошибок с трейсом текущего исключения, если оно есть"""
        trace = traceback.format_exc()
        if trace and trace != 'NoneType: None\n':
            message = f"{message}\n{RED}Traceback:{END}\n{trace}"
        self.logger.error(f"{RED}{message}{END}", *args, **kwargs)

    def start_func(self, func_name, params=None):
        if not self.logger.isEnabledFor(logging.DEBUG):
            return
        params_str = f" с параметрами: {format_object(params)}" if params else ""
        self.debug(f"{PURPLE}Начало выполнения функции {func_name}{END}{params_str}")

    def end_func(self, func_name, result=None, execution_time=None):
        if not self.logger.isEnabledFor(logging.DEBUG):
            return
        result_str = f", результат: {format_object(result)}" if result is not None else ""
        time_str = f", время выполнения: {execution_time:.4f}с" if execution_time else ""
        self.debug(f"{PURPLE}Окончание выполнения функции {func_name}{END}{result_str}{time_str}")

    def log_exception(self, message="Произошло исключение"):
        exc_type, exc_value, _ = sys.exc_info()
        if exc_type:
            self.error(f"{message}: {exc_type.__name__}: {exc_value}")
        else:
            self.error(message)

    def log_request(self, request):
        """Логирование входящего HTTP запроса (без тела и секретных заголовков)"""
        if not self.logger.isEnabledFor(logging.DEBUG):
            return
        client = getattr(request, 'client', None)
        headers = {key: _mask(key, value) for key, value in dict(getattr(request, 'headers', {})).items()}
        self.debug(
            f"{CYAN}HTTP запрос:{END} {request.method} {request.url}\n"
            f"{CYAN}Клиент:{END} {client.host if client else 'unknown'}\n"
            f"{CYAN}Заголовки:{END} {json.dumps(headers, indent=2, ensure_ascii=False)}"
        )

    def log_response(self, response, process_time=None):
        if not self.logger.isEnabledFor(logging.DEBUG):
            return
        status_code = getattr(response, 'status_code', 0)
        color = GREEN if status_code < 400 else YELLOW if status_code < 500 else RED
        info = f"{CYAN}HTTP ответ:{END} {color}Статус {status_code}{END}"
        if process_time is not None:
            info += f"\n{CYAN}Время обработки:{END} {process_time:.3f}с"
        self.debug(info)


def _bound_arguments(func, args, kwargs):
    func_args = dict(zip(inspect.getfullargspec(func).args, args))
    func_args.update(kwargs)
    func_args.pop('self', None)
    func_args.pop('cls', None)
    return func_args


def _log_failure(logger, func_name, exc):
    # Ожидаемые клиентские ошибки (4xx) не засоряют лог трейсами
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int) and status_code < 500:
        logger.warning(f"Функция {func_name} завершилась ошибкой {status_code}: {getattr(exc, 'detail', exc)}")
    else:
        logger.log_exception(f"Ошибка в функции {func_name}")


def log_function(logger=None):
    """Декоратор для автоматического логирования функций (sync и async)"""

    def decorator(func):
        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                active = logger or debug_logger
                active.start_func(func.__name__, _bound_arguments(func, args, kwargs))
                started = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception as exc:
                    _log_failure(active, func.__name__, exc)
                    raise
                active.end_func(func.__name__, result, time.perf_counter() - started)
                return result

            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            active = logger or debug_logger
            active.start_func(func.__name__, _bound_arguments(func, args, kwargs))
            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                _log_failure(active, func.__name__, exc)
                raise
            active.end_func(func.__name__, result, time.perf_counter() - started)
            return result

        return wrapper

    return decorator


debug_logger = DebugLogger()
