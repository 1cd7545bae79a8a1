from typing import Optional

from ..logging import log
from .authenticator import Authenticator, AuthSection, Credentials


class SimpleAuthSection(AuthSection):
    def username(self) -> Optional[str]:
        return self.s.get("username")

    def password(self) -> Optional[str]:
        return self.s.get("password")


class SimpleAuthenticator(Authenticator):
    """
    Uses the username and password from its section and asks for whatever is
    missing. Answers are forgotten when they are rejected, so the next login
    attempt asks again.
    """

    def __init__(self, name: str, section: SimpleAuthSection) -> None:
        super().__init__(name)

        self._configured_username = section.username()
        self._configured_password = section.password()
        self._username = self._configured_username
        self._password = self._configured_password

    async def credentials(self) -> Credentials:
        if self._username is None:
            self._username = await log.ask(f"Username for {self.name}: ")
        if self._password is None:
            self._password = await self._find_password(self._username)
        return Credentials(self._username, self._password)

    async def _find_password(self, username: str) -> str:
        return await log.ask(f"Password for {username}: ", secret=True)

    def reject(self) -> None:
        if self._configured_username is not None and self._configured_password is not None:
            super().reject()

        self._username = self._configured_username
        self._password = self._configured_password
