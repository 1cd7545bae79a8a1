import asyncio
import http.cookies
import ssl
from contextlib import asynccontextmanager
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Optional, Type

import aiohttp
import certifi
from aiohttp.client import ClientTimeout

from .auth import AuthError, AuthErrorKind
from .limiter import RateGate
from .logging import log
from .retry import TransientHttpError, backoff_delay, is_transient_status
from .utils import fmt_real_path
from .version import NAME, VERSION

if TYPE_CHECKING:
    from .login import Login


class SessionManager:
    """
    Owns the HTTP session and the login state.

    Every request goes through the RateGate first. Logging in is guarded by a
    lock and versioned: a caller remembers current_version() before sending a
    request and passes it to ensure_valid() if the server turned out to have
    forgotten about us. Only the first caller with a given version logs in
    again, everyone else reuses the result.
    """

    def __init__(
            self,
            base_url: str,
            login: "Login",
            gate: RateGate,
            cookie_path: Optional[Path] = None,
            http_timeout: float = 30.0,
            auth_attempts: int = 3,
            backoff: float = 1.0,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if auth_attempts < 1:
            raise ValueError("auth_attempts must be at least 1")

        self._base_url = base_url.rstrip("/")
        self._login = login
        self._gate = gate
        self._cookie_path = cookie_path
        self._http_timeout = http_timeout
        self._auth_attempts = auth_attempts
        self._backoff = backoff
        self._sleep = sleep

        self._version = 0
        self._authenticated = False
        self._auth_lock = asyncio.Lock()
        self._request_count = 0

        self._cookie_jar: Optional[aiohttp.CookieJar] = None
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def gate(self) -> RateGate:
        return self._gate

    @property
    def request_count(self) -> int:
        return self._request_count

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("SessionManager used outside of 'async with'")
        return self._session

    async def __aenter__(self) -> "SessionManager":
        self._request_count = 0
        self._cookie_jar = aiohttp.CookieJar()
        self._load_cookies()

        self._session = aiohttp.ClientSession(
            headers={"User-Agent": f"{NAME}/{VERSION}"},
            cookie_jar=self._cookie_jar,
            connector=aiohttp.TCPConnector(ssl=ssl.create_default_context(cafile=certifi.where())),
            timeout=ClientTimeout(
                # Large files over slow connections need a generous total
                total=15 * 60,
                connect=self._http_timeout,
                sock_connect=self._http_timeout,
                sock_read=self._http_timeout,
            ),
            # aiohttp would otherwise re-quote the Shibboleth redirect and break
            # its signature. See https://github.com/aio-libs/aiohttp/issues/6626
            requote_redirect_url=False,
        )
        return self

    async def __aexit__(
            self,
            exc_type: Optional[Type[BaseException]],
            exc_value: Optional[BaseException],
            traceback: Optional[TracebackType],
    ) -> None:
        try:
            if self._authenticated:
                self._save_cookies()
        finally:
            if self._session is not None:
                await self._session.close()
            self._session = None
            log.explain_topic(f"Total amount of HTTP requests: {self._request_count}")

    @asynccontextmanager
    async def get(self, url: str, **kwargs: Any) -> AsyncIterator[aiohttp.ClientResponse]:
        """
        A rate limited GET request. Raises TransientHttpError for 429 and 5xx.
        """

        await self._gate.acquire()
        self._request_count += 1
        async with self.session.get(url, **kwargs) as response:
            if is_transient_status(response.status):
                raise TransientHttpError(url, response.status)
            yield response

    @asynccontextmanager
    async def post(self, url: str, **kwargs: Any) -> AsyncIterator[aiohttp.ClientResponse]:
        """
        A rate limited POST request. Raises TransientHttpError for 429 and 5xx.
        """

        await self._gate.acquire()
        self._request_count += 1
        async with self.session.post(url, **kwargs) as response:
            if is_transient_status(response.status):
                raise TransientHttpError(url, response.status)
            yield response

    async def current_version(self) -> int:
        """
        The version of the current login. Must be called before any request
        that might reveal the login has expired.
        """

        # Waiting for the lock means nobody sends requests with a session that
        # is being replaced right now
        async with self._auth_lock:
            return self._version

    async def authenticate(self) -> int:
        """
        Make sure we are logged in, logging in if the stored cookies are not
        good enough. Returns the new session version.

        May throw an AuthError.
        """

        async with self._auth_lock:
            log.explain_topic("Authenticating")
            await self._authenticate_with_retries(check_first=True)
            return self._version

    async def ensure_valid(self, caller_version: int) -> int:
        """
        Called after a request showed that the login expired. Logs in again
        unless somebody else already did so since "caller_version" was taken.

        May throw an AuthError.
        """

        async with self._auth_lock:
            log.explain_topic("Session expired, authenticating again")
            if caller_version != self._version:
                log.explain("Another task already logged in again, reusing its session")
                return self._version

            await self._authenticate_with_retries(check_first=False)
            return self._version

    async def _authenticate_with_retries(self, check_first: bool) -> None:
        last_error: Optional[AuthError] = None

        for round in range(self._auth_attempts):
            if round > 0:
                delay = backoff_delay(self._backoff, round - 1)
                log.explain(f"Trying to log in again in {delay:.1f}s")
                await self._sleep(delay)

            try:
                if check_first and await self._login.is_logged_in(self):
                    log.explain("Stored cookies are still valid")
                else:
                    log.explain("Calling login procedure")
                    await self._login.login(self)
            except AuthError as e:
                if not e.retryable:
                    raise
                log.explain(f"Login failed: {e}")
                last_error = e
                continue
            except (aiohttp.ClientError, asyncio.TimeoutError, TransientHttpError) as e:
                log.explain(f"Login failed: {e!r}")
                last_error = AuthError(
                    f"Could not reach {self._base_url}: {e!r}",
                    AuthErrorKind.PLATFORM_UNAVAILABLE,
                )
                continue

            self._version += 1
            self._authenticated = True
            # Saving right away means an aborted run does not need to log in again
            self._save_cookies()
            return

        assert last_error is not None
        raise last_error

    def _load_cookies(self) -> None:
        log.explain_topic("Loading cookies")
        assert self._cookie_jar is not None

        path = self._cookie_path
        if path is None:
            log.explain("Cookies are not persisted")
            return
        if not path.is_file():
            log.explain(f"{fmt_real_path(path)} is not a file")
            return

        log.explain(f"Loading cookies from {fmt_real_path(path)}")
        try:
            jar: Any = http.cookies.SimpleCookie()
            with open(path, encoding="utf-8") as f:
                for i, line in enumerate(f):
                    # Header names are case insensitive
                    if line[:11].lower() == "set-cookie:":
                        jar.load(line[11:])
                    else:
                        log.explain(f"Line {i} doesn't start with 'Set-Cookie:', ignoring it")
            self._cookie_jar.update_cookies(jar)
        except (OSError, UnicodeDecodeError, http.cookies.CookieError) as e:
            log.explain("Failed to load cookies")
            log.explain(str(e))

    def _save_cookies(self) -> None:
        path = self._cookie_path
        if path is None or self._cookie_jar is None:
            return

        log.explain_topic(f"Saving cookies to {fmt_real_path(path)}")
        try:
            jar: Any = http.cookies.SimpleCookie()
            for morsel in self._cookie_jar:
                jar[morsel.key] = morsel
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(jar.output(sep="\n"))
                f.write("\n")
        except OSError as e:
            log.warn(f"Failed to save cookies to {fmt_real_path(path)}")
            log.warn_contd(str(e))
