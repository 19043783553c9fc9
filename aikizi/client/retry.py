# aikizi/client/retry.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Reintento acotado: `max_attempts` intentos, espera delay * backoff^(n-1)."""

    max_attempts: int = 3
    delay: float = 1.0
    backoff: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    should_retry: Callable[[BaseException], bool] = lambda e: True
    sleep: Callable[[float], None] = time.sleep

    def call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except self.retry_on as e:
                if attempt >= self.max_attempts or not self.should_retry(e):
                    raise
                wait = self.delay * (self.backoff ** (attempt - 1))
                log.warning(
                    "%s falló (intento %d/%d): %s; reintento en %.1fs",
                    getattr(fn, "__name__", "call"), attempt, self.max_attempts, e, wait,
                )
                self.sleep(wait)
                attempt += 1
