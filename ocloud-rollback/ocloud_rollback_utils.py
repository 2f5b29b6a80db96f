#!/usr/bin/env python3
"""
O-Cloud Rollback Utilities
Colored component logging, retry with exponential backoff and cancellable sleeps
"""

import asyncio
import logging
import sys
from datetime import datetime
from typing import Optional, Tuple, Type

from ocloud_rollback_errors import TransientError


class Colors:
    """ANSI color codes for terminal output"""
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[1;34m'
    CYAN = '\033[0;36m'
    NC = '\033[0m'


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Setup logging configuration"""
    level = getattr(logging, log_level.upper(), logging.INFO)
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - [%(funcName)s] - %(message)s',
        handlers=handlers,
        force=True
    )


class ComponentLogger:
    """Mixin giving a class colored [COMPONENT] console output plus a logger"""

    logger = logging.getLogger("ocloud_rollback")
    console = True

    def _echo(self, color: str, component: str, message: str):
        if self.console:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
            print(f"{color}[{component}]{Colors.NC} {timestamp} - {message}")

    def log_info(self, message: str, component: str = "MAIN"):
        """Info logging"""
        self._echo(Colors.BLUE, component, message)
        self.logger.info(f"[{component}] {message}")

    def log_success(self, message: str, component: str = "MAIN"):
        """Success logging"""
        self._echo(Colors.GREEN, component, message)
        self.logger.info(f"[{component}] {message}")

    def log_warn(self, message: str, component: str = "MAIN"):
        """Warning logging"""
        self._echo(Colors.YELLOW, component, message)
        self.logger.warning(f"[{component}] {message}")

    def log_error(self, message: str, component: str = "MAIN"):
        """Error logging"""
        self._echo(Colors.RED, component, message)
        self.logger.error(f"[{component}] {message}")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    return min(base_delay * (2 ** attempt), max_delay)


async def retry_with_backoff(operation, *args,
                             retries: int = 3,
                             base_delay: float = 1.0,
                             max_delay: float = 30.0,
                             retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
                             on_retry=None,
                             **kwargs):
    """Retry an async operation with exponential backoff.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates on the first occurrence. When every attempt fails the last
    exception is raised.
    """
    last_exception = None

    for attempt in range(retries + 1):
        try:
            return await operation(*args, **kwargs)
        except retry_on as e:
            last_exception = e
            if attempt >= retries:
                break
            wait_time = backoff_delay(attempt, base_delay, max_delay)
            if on_retry is not None:
                on_retry(attempt + 1, wait_time, e)
            await asyncio.sleep(wait_time)

    raise last_exception


async def sleep_or_stop(delay: float, stop: Optional[asyncio.Event]) -> bool:
    """Sleep for ``delay`` seconds; return True if ``stop`` fired first"""
    if stop is None:
        await asyncio.sleep(delay)
        return False
    if stop.is_set():
        return True
    try:
        await asyncio.wait_for(stop.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False
