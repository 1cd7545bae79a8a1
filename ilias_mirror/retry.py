import asyncio
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

import aiohttp

from .logging import log

MAX_BACKOFF = 60.0

AWrapped = TypeVar("AWrapped", bound=Callable[..., Awaitable[Any]])


class TransientHttpError(Exception):
    """
    The server answered, but with a status that usually goes away by itself
    (429 or 5xx).
    """

    def __init__(self, url: str, status: int):
        super().__init__(f"Server responded with status {status} for {url}")
        self.url = url
        self.status = status


def is_transient_status(status: int) -> bool:
    return status == 429 or status >= 500


def backoff_delay(base: float, round: int) -> float:
    return min(MAX_BACKOFF, base * (2 ** round))


def iorepeat(
        attempts: int,
        name: str,
        error: Type[Exception],
        backoff: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Callable[[AWrapped], AWrapped]:
    """
    Retry the decorated coroutine function on network trouble, waiting
    exponentially longer between attempts. Once all attempts are used up,
    "error" is raised with the last exception as its cause.

    Problems that will not go away by retrying (wrong content type, redirect
    loops) raise "error" immediately.
    """

    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    def decorator(f: AWrapped) -> AWrapped:
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exception: Optional[BaseException] = None
            for round in range(attempts):
                if round > 0:
                    delay = backoff_delay(backoff, round - 1)
                    log.explain_topic(f"Retrying {name} in {delay:.1f}s. Retries left: {attempts - round}")
                    log.explain(f"Last exception: {last_exception!r}")
                    await sleep(delay)

                try:
                    return await f(*args, **kwargs)
                except aiohttp.ContentTypeError:
                    raise error(f"Server returned an invalid content type while {name}")
                except aiohttp.TooManyRedirects:
                    raise error(f"Got stuck in a redirect loop while {name}")
                except aiohttp.ClientPayloadError as e:  # encoding or not enough bytes
                    last_exception = e
                except aiohttp.ClientConnectionError as e:  # timeout, disconnect, resolve failed, ...
                    last_exception = e
                except asyncio.TimeoutError as e:
                    last_exception = e
                except TransientHttpError as e:
                    last_exception = e

            raise error(f"Error while {name}: {last_exception!r}") from last_exception

        return wrapper  # type: ignore

    return decorator
