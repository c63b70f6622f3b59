"""
Utilitaires de retry avec backoff exponentiel (version asyncio).

Supporte:
- Backoff exponentiel avec jitter
- Filtrage des exceptions retryable
- Logging des tentatives
"""
import asyncio
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from app.core.exceptions import is_retryable
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float, rng: Optional[random.Random] = None) -> float:
    """Délai exponentiel borné avec jitter ±30%."""
    rng = rng or random
    delay = min(max_delay, base_delay * (2 ** attempt))
    return delay * (0.7 + rng.random() * 0.6)


async def with_retry_async(
    fn: Callable[[], Awaitable[T]],
    retries: int = 2,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    retry_on: Optional[Tuple[Type[BaseException], ...]] = None,
    source: Optional[str] = None,
) -> T:
    """
    Exécute une coroutine avec retry et backoff exponentiel.

    Args:
        fn: Fabrique de coroutine (sans arguments)
        retries: Nombre de retries maximum
        base_delay: Délai initial en secondes
        max_delay: Délai maximum en secondes
        retry_on: Tuple d'exceptions sur lesquelles retry (None = utilise is_retryable)
        source: Nom de la source pour le logging

    Raises:
        L'exception de la dernière tentative si toutes échouent
    """
    for attempt in range(retries + 1):
        try:
            return await fn()
        except Exception as e:
            if retry_on is not None:
                should_retry = isinstance(e, retry_on)
            else:
                should_retry = is_retryable(e)

            if attempt >= retries or not should_retry:
                logger.warning(
                    f"Retry exhausted after {attempt + 1} attempts",
                    error_type=type(e).__name__,
                    source=source,
                    attempt=attempt + 1,
                    max_attempts=retries + 1,
                )
                raise

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.info(
                f"Retry attempt {attempt + 1}/{retries + 1}, waiting {delay:.2f}s",
                error_type=type(e).__name__,
                source=source,
                delay_s=round(delay, 2),
            )
            await asyncio.sleep(delay)

    raise RuntimeError("unreachable")
