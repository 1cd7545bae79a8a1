from abc import ABC, abstractmethod
from typing import Any, Optional, cast
from urllib.parse import urljoin

import aiohttp
import yarl
from bs4 import BeautifulSoup, Tag

from .auth import Authenticator, AuthError, AuthErrorKind, TfaAuthenticator
from .crawl.ilias_html import IliasPage
from .logging import log
from .session import SessionManager
from .utils import soupify


class Login(ABC):
    """
    A way of obtaining ILIAS session cookies.
    """

    def __init__(self, base_url: str, authenticator: Authenticator):
        self._base_url = base_url.rstrip("/")
        self._auth = authenticator

    def dashboard_url(self) -> str:
        return f"{self._base_url}/ilias.php?baseClass=ilDashboardGUI&cmd=show"

    async def is_logged_in(self, session: SessionManager) -> bool:
        """
        Check whether the cookies we have are still good, without sending any
        credentials.
        """

        async with session.get(self.dashboard_url()) as response:
            page = IliasPage(soupify(await response.read()), str(response.url))
        return page.is_logged_in()

    @abstractmethod
    async def login(self, session: SessionManager) -> None:
        """
        Log in, leaving the cookies in the session's jar.

        May throw an AuthError.
        """


class LocalLogin(Login):
    """
    Login via the ILIAS login form, for instances without single sign-on.
    """

    def __init__(self, base_url: str, authenticator: Authenticator, client_id: str):
        super().__init__(base_url, authenticator)
        self._client_id = client_id

    async def login(self, session: SessionManager) -> None:
        while True:
            params = {
                "client_id": self._client_id,
                "cmd": "force_login",
            }
            async with session.get(urljoin(self._base_url + "/", "login.php"), params=params) as response:
                login_page = soupify(await response.read())
                page_url = str(response.url)

            login_form = cast(Optional[Tag], login_page.find("form", attrs={"name": "login_form"}))
            if login_form is None:
                raise AuthError(
                    "Could not find the login form! Specified client id might be invalid.",
                    AuthErrorKind.UNEXPECTED_RESPONSE,
                )

            login_url = cast(Optional[str], login_form.attrs.get("action"))
            if login_url is None:
                raise AuthError(
                    "Could not find the action URL in the login form!",
                    AuthErrorKind.UNEXPECTED_RESPONSE,
                )

            username, password = await self._auth.credentials()

            login_form_data = aiohttp.FormData()
            login_form_data.add_field("login_form/input_3/input_4", username)
            login_form_data.add_field("login_form/input_3/input_5", password)

            async with session.post(urljoin(page_url, login_url), data=login_form_data) as response:
                page = IliasPage(soupify(await response.read()), str(response.url))

            if page.is_logged_in():
                return

            log.explain("ILIAS did not accept the credentials")
            # Raises an AuthError unless the authenticator can ask again
            self._auth.reject()


class ShibbolethLogin(Login):
    """
    Login via shibboleth system.
    """

    def __init__(
            self,
            base_url: str,
            authenticator: Authenticator,
            tfa_authenticator: Optional[Authenticator],
    ):
        super().__init__(base_url, authenticator)
        self._tfa_auth = tfa_authenticator

    async def login(self, session: SessionManager) -> None:
        """
        Performs the ILIAS Shibboleth authentication dance. The cookies
        obtained should be good for a few minutes, maybe even an hour or two.
        """

        # Equivalent: Click on "Mit KIT-Account anmelden" button in
        # https://ilias.studium.kit.edu/login.php
        url = f"{self._base_url}/shib_login.php"
        async with session.get(url) as response:
            shib_url = response.url
            if str(shib_url).startswith(self._base_url):
                log.explain("ILIAS recognized our shib token and logged us in in the background, returning")
                return
            soup: BeautifulSoup = soupify(await response.read())

        # Attempt to login using credentials, if necessary
        while not self._login_successful(soup):
            # Searching the form here so that this fails before asking for
            # credentials rather than after asking.
            form = self._find_form(soup)
            action = cast(str, form["action"])

            # Equivalent: Enter credentials in
            # https://idp.scc.kit.edu/idp/profile/SAML2/Redirect/SSO
            url = str(shib_url.origin()) + action
            username, password = await self._auth.credentials()
            data = {
                "_eventId_proceed": "",
                "j_username": username,
                "j_password": password,
                "fudis_web_authn_assertion_input": "",
            }
            if csrf_token_input := form.find("input", {"name": "csrf_token"}):
                data["csrf_token"] = cast(str, cast(Tag, csrf_token_input)["value"])
            soup = await _post(session, url, data)

            if soup.find(id="attributeRelease"):
                raise AuthError(
                    "ILIAS Shibboleth entitlements changed! "
                    "Please log in once in your browser and review them"
                )

            if self._tfa_required(soup):
                soup = await self._authenticate_tfa(session, soup, shib_url)

            if not self._login_successful(soup):
                self._auth.reject()

        # Equivalent: Being redirected via JS automatically
        # (or clicking "Continue" if you have JS disabled)
        relay_state = cast(Tag, soup.find("input", {"name": "RelayState"}))
        saml_response = cast(Tag, soup.find("input", {"name": "SAMLResponse"}))
        url = cast(str, self._find_form(soup)["action"])
        data = {
            "RelayState": cast(str, relay_state["value"]),
            "SAMLResponse": cast(str, saml_response["value"]),
        }
        async with session.post(url, data=data):
            pass

    async def _authenticate_tfa(
            self,
            session: SessionManager,
            soup: BeautifulSoup,
            shib_url: yarl.URL,
    ) -> BeautifulSoup:
        if not self._tfa_auth:
            self._tfa_auth = TfaAuthenticator("ilias-anon-tfa")

        _, tfa_token = await self._tfa_auth.credentials()

        form = self._find_form(soup)
        action = cast(str, form["action"])

        # Equivalent: Enter token in
        # https://idp.scc.kit.edu/idp/profile/SAML2/Redirect/SSO
        url = str(shib_url.origin()) + action
        data = {
            "_eventId_proceed": "",
            "fudis_otp_input": tfa_token,
        }
        if csrf_token_input := form.find("input", {"name": "csrf_token"}):
            data["csrf_token"] = cast(str, cast(Tag, csrf_token_input)["value"])
        return await _post(session, url, data)

    @staticmethod
    def _find_form(soup: BeautifulSoup) -> Tag:
        form = soup.find("form", {"method": "post"})
        if not isinstance(form, Tag):
            raise AuthError(
                "Could not find the Shibboleth login form",
                AuthErrorKind.UNEXPECTED_RESPONSE,
            )
        return form

    @staticmethod
    def _login_successful(soup: BeautifulSoup) -> bool:
        relay_state = soup.find("input", {"name": "RelayState"})
        saml_response = soup.find("input", {"name": "SAMLResponse"})
        return relay_state is not None and saml_response is not None

    @staticmethod
    def _tfa_required(soup: BeautifulSoup) -> bool:
        return soup.find(id="fudiscr-form") is not None


async def _post(session: SessionManager, url: str, data: Any) -> BeautifulSoup:
    async with session.post(url, data=data) as response:
        return soupify(await response.read())
