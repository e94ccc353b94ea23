import time
from typing import Callable

# Часы инжектируются в GC, лимитер и хранилища, чтобы тесты могли их подменять
Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
