from typing import cast

import keyring
from keyring.errors import PasswordDeleteError

from ..logging import log
from ..version import NAME
from .simple import SimpleAuthenticator, SimpleAuthSection


class KeyringAuthSection(SimpleAuthSection):
    def keyring_name(self) -> str:
        return cast(str, self.s.get("keyring_name", fallback=NAME))


class KeyringAuthenticator(SimpleAuthenticator):
    """
    Asks like the simple authenticator, but keeps typed in passwords in the
    system keyring for later runs.
    """

    def __init__(self, name: str, section: KeyringAuthSection) -> None:
        super().__init__(name, section)
        self._keyring_name = section.keyring_name()

    async def _find_password(self, username: str) -> str:
        if stored := keyring.get_password(self._keyring_name, username):
            log.explain(f"Found the password for {username} in the keyring")
            return stored

        password = await super()._find_password(username)
        keyring.set_password(self._keyring_name, username, password)
        return password

    def reject(self) -> None:
        if self._username is not None and self._configured_password is None:
            try:
                keyring.delete_password(self._keyring_name, self._username)
            except PasswordDeleteError:
                log.explain(f"There is no stored password for {self._username}")
        super().reject()
