import asyncio
import getpass
import random
import string
import threading
from pathlib import Path, PurePath
from typing import Any, Callable, TypeVar

import bs4

T = TypeVar("T")

SUFFIX_CHARS = string.ascii_lowercase + string.digits


async def in_daemon_thread(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    loop = asyncio.get_running_loop()
    future: asyncio.Future[T] = asyncio.Future()

    def thread_func() -> None:
        try:
            result = func(*args, **kwargs)
        except BaseException as e:
            loop.call_soon_threadsafe(future.set_exception, e)
        else:
            loop.call_soon_threadsafe(future.set_result, result)

    threading.Thread(target=thread_func, daemon=True).start()

    return await future


async def ainput(prompt: str) -> str:
    return await in_daemon_thread(lambda: input(prompt))


async def agetpass(prompt: str) -> str:
    return await in_daemon_thread(lambda: getpass.getpass(prompt))


def soupify(data: bytes) -> bs4.BeautifulSoup:
    """
    Parses HTML to a beautifulsoup object.
    """

    return bs4.BeautifulSoup(data, "html.parser")


def tmp_sibling(base: Path, suffix_length: int) -> Path:
    """
    A hidden, randomly named file next to "base". Used for write-then-rename.
    """

    prefix = "" if base.name.startswith(".") else "."
    suffix = "".join(random.choices(SUFFIX_CHARS, k=suffix_length))
    return base.parent / f"{prefix}{base.name}.tmp.{suffix}"


def str_path(path: PurePath) -> str:
    if not path.parts:
        return "."
    return "/".join(path.parts)


def fmt_path(path: PurePath) -> str:
    return repr(str_path(path))


def fmt_real_path(path: Path) -> str:
    return repr(str(path.absolute()))
