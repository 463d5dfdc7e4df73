"""
Retrying invoker for external calls.

Each attempt gets its own timeout; transient failures are retried with
exponential backoff. The caller always gets a result object back and
decides how to present it ("taking longer than expected" for a timeout,
a short error for a hard failure).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from .exceptions import ExternalServiceError, ExternalTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Succeeded:
    value: Any
    attempts: int = 1
    ok = True


@dataclass(frozen=True)
class TimedOut:
    timeout: float
    attempts: int
    ok = False

    def as_error(self, service: str = "external") -> ExternalTimeoutError:
        return ExternalTimeoutError(service, self.timeout)


@dataclass(frozen=True)
class Failed:
    error: Exception
    attempts: int
    ok = False


InvokeResult = Union[Succeeded, TimedOut, Failed]


async def invoke_with_retry(
    operation: Callable[[], Awaitable[Any]],
    *,
    timeout: float,
    max_attempts: int = 3,
    retry_on: tuple = (ExternalServiceError,),
    retry_delay: float = 0.5,
    name: Optional[str] = None,
) -> InvokeResult:
    """
    Run an async operation with a per-attempt timeout and bounded retries.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        timeout: Seconds allowed for a single attempt
        max_attempts: Total attempts including the first one
        retry_on: Exception types considered transient
        retry_delay: Base delay; attempt n waits retry_delay * 2**n
        name: Label used in log lines

    Returns:
        Succeeded, TimedOut (every attempt hung or the last one did) or Failed
    """
    label = name or getattr(operation, "__name__", "operation")
    timed_out = False
    last_error: Optional[Exception] = None

    for attempt in range(max_attempts):
        try:
            value = await asyncio.wait_for(operation(), timeout=timeout)
            if attempt:
                logger.info(f"✅ {label} succeeded on attempt {attempt + 1}/{max_attempts}")
            return Succeeded(value=value, attempts=attempt + 1)
        except asyncio.TimeoutError:
            timed_out = True
            last_error = None
            logger.warning(f"⏰ Timeout on attempt {attempt + 1}/{max_attempts} for {label}")
        except ExternalTimeoutError as e:
            timed_out = True
            last_error = None
            logger.warning(f"⏰ {label} reported timeout on attempt {attempt + 1}/{max_attempts}: {e}")
        except retry_on as e:
            timed_out = False
            last_error = e
            logger.warning(f"🔄 Retry {attempt + 1}/{max_attempts} for {label}: {e}")
        except Exception as e:
            logger.error(f"❌ {label} failed without retry: {type(e).__name__}: {e}")
            return Failed(error=e, attempts=attempt + 1)

        if attempt < max_attempts - 1:
            await asyncio.sleep(retry_delay * (2**attempt))

    if timed_out:
        logger.error(f"❌ {label} timed out after {max_attempts} attempts")
        return TimedOut(timeout=timeout, attempts=max_attempts)
    logger.error(f"❌ All retries failed for {label}: {last_error}")
    return Failed(error=last_error, attempts=max_attempts)
