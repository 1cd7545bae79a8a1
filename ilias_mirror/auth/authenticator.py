from abc import ABC, abstractmethod
from enum import Enum
from typing import NamedTuple

from ..config import Section


class AuthLoadError(Exception):
    pass


class AuthErrorKind(Enum):
    INVALID_CREDENTIALS = "invalid credentials"
    PLATFORM_UNAVAILABLE = "platform unavailable"
    UNEXPECTED_RESPONSE = "unexpected response"


class AuthError(Exception):
    """
    Logging in failed.

    Only errors of kind INVALID_CREDENTIALS are final right away. The other
    kinds may go away when trying again a bit later.
    """

    def __init__(self, message: str, kind: AuthErrorKind = AuthErrorKind.INVALID_CREDENTIALS):
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind != AuthErrorKind.INVALID_CREDENTIALS


class Credentials(NamedTuple):
    username: str
    password: str


class AuthSection(Section):
    def type(self) -> str:
        value = self.s.get("type")
        if value is None:
            self.missing_value("type")
        return value


class Authenticator(ABC):
    """
    Hands out the credentials a Login sends to ILIAS or the identity provider.

    A Login calls reject() when the credentials were refused and then asks for
    new ones, until reject() raises an AuthError.
    """

    def __init__(self, name: str) -> None:
        """
        Subclasses must call this constructor first (via super().__init__).

        May throw an AuthLoadError.
        """

        self.name = name

    @abstractmethod
    async def credentials(self) -> Credentials:
        pass

    def reject(self) -> None:
        """
        The last credentials did not work. The default gives up, authenticators
        that can come up with different ones (e. g. by asking) override this.
        """

        raise AuthError(f"The credentials from {self.name!r} were rejected")
