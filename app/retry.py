# app/retry.py
"""
Rotating retry over a credential pool.

A unit of work receives one credential and either returns a result or raises.
`RateLimitedError` and `RetryableProviderError` move on to the next credential
(rate limits after a short backoff). When the end of the pool is reached the
executor waits a cooldown and starts another pass, up to `max_cycles` extra
passes. Any other exception propagates untouched.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .credentials import Credential, CredentialPool
from .errors import AllCredentialsExhaustedError, RateLimitedError, RetryableProviderError
from .metrics import rag_provider_attempts_total, rag_provider_exhausted_total

logger = logging.getLogger(__name__)

T = TypeVar("T")
Work = Callable[[Credential], Awaitable[T]]
Sleep = Callable[[float], Awaitable[None]]


class RotatingRetryExecutor:
    def __init__(
        self,
        pool: CredentialPool,
        *,
        max_cycles: int = 1,
        cooldown_s: float = 2.0,
        backoff_s: float = 1.0,
        provider: str = "gemini",
        sleep: Sleep = asyncio.sleep,
    ):
        self.pool = pool
        self.max_cycles = max(0, int(max_cycles))
        self.cooldown_s = cooldown_s
        self.backoff_s = backoff_s
        self.provider = provider
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.pool.size() * (self.max_cycles + 1)

    async def run(self, work: Work, *, start: int = 0) -> T:
        """Call `work` with successive credentials until it succeeds or the budget runs out."""
        size = self.pool.size()
        index = start % size
        cycle = 0
        attempts = 0
        last_error: Optional[BaseException] = None

        while True:
            if index >= size:
                if cycle >= self.max_cycles:
                    rag_provider_exhausted_total.labels(provider=self.provider).inc()
                    logger.error("%s: all %d credentials exhausted after %d attempts",
                                 self.provider, size, attempts)
                    raise AllCredentialsExhaustedError(self.provider, attempts, last_error)
                logger.info("%s: pool cycle %d done, cooling down %.1fs",
                            self.provider, cycle + 1, self.cooldown_s)
                await self._sleep(self.cooldown_s)
                index = 0
                cycle += 1
                continue

            credential = self.pool.get(index)
            attempts += 1
            try:
                result = await work(credential)
            except RateLimitedError as e:
                rag_provider_attempts_total.labels(provider=self.provider, outcome="rate_limited").inc()
                logger.warning("%s: key #%d rate limited (%s); backing off %.1fs",
                               self.provider, credential.index, e, self.backoff_s)
                last_error = e
                await self._sleep(self.backoff_s)
                index += 1
                continue
            except RetryableProviderError as e:
                rag_provider_attempts_total.labels(provider=self.provider, outcome="retryable").inc()
                logger.warning("%s: key #%d failed (%s); trying next key",
                               self.provider, credential.index, e)
                last_error = e
                index += 1
                continue
            except Exception:
                rag_provider_attempts_total.labels(provider=self.provider, outcome="error").inc()
                raise

            rag_provider_attempts_total.labels(provider=self.provider, outcome="ok").inc()
            return result
