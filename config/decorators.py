import functools
import logging

from services.exceptions import AccountStateConflictError

logger = logging.getLogger(__name__)


def retry_on_conflict(max_attempts: int = 2):
    """
    A decorator for async read-modify-write operations. If the write loses an
    optimistic-concurrency race, the whole operation is re-run once with a
    fresh read; a second lost race is surfaced to the caller.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except AccountStateConflictError as e:
                    if attempt < max_attempts - 1:
                        logger.warning(f"Conflict in {func.__name__}, retrying with fresh read (Attempt {attempt + 1}/{max_attempts})")
                        continue
                    logger.error(f"Conflict in {func.__name__} persisted after {max_attempts} attempts: {e}")
                    raise
        return wrapper
    return decorator
