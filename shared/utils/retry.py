"""Reintentos con backoff exponencial para llamadas a proveedores externos"""
import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Iterator, Optional, Tuple, Type

logger = logging.getLogger(__name__)


def backoff_delays(
    max_retries: int,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
) -> Iterator[float]:
    """Esperas entre intentos: initial_delay, initial_delay * base, ... hasta max_delay"""
    delay = initial_delay
    for _ in range(max_retries):
        yield min(delay, max_delay)
        delay *= exponential_base


async def retry_with_backoff(
    func: Callable[[], Awaitable[Any]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
) -> Any:
    """
    Ejecutar una coroutine reintentando ante las excepciones indicadas

    Args:
        func: Función sin argumentos que devuelve la coroutine a ejecutar
        max_retries: Reintentos después del primer intento
        exceptions: Excepciones que disparan un reintento; el resto se propaga
        on_retry: Callback (número de intento, excepción) antes de cada espera

    Raises:
        La última excepción si se agotan los reintentos
    """
    delays = backoff_delays(max_retries, initial_delay, max_delay, exponential_base)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func()
        except exceptions as e:
            delay = next(delays, None)
            if delay is None:
                raise
            if on_retry is not None:
                on_retry(attempt, e)
            logger.warning(
                f"Intento {attempt}/{max_retries + 1} falló: {type(e).__name__}: {e}. "
                f"Reintentando en {delay:.1f}s..."
            )
            await asyncio.sleep(delay)


def retry_decorator(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
):
    """Aplica retry_with_backoff a un método async"""
    def decorator(func: Callable[..., Awaitable[Any]]):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_with_backoff(
                lambda: func(*args, **kwargs),
                max_retries=max_retries,
                initial_delay=initial_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                exceptions=exceptions,
            )
        return wrapper
    return decorator
