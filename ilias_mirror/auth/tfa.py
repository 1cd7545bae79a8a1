from ..logging import log
from .authenticator import Authenticator, Credentials


class TfaAuthenticator(Authenticator):
    """
    Asks for a one-time token whenever a login requires a second factor. The
    token is handed out as password, there is no username.
    """

    async def credentials(self) -> Credentials:
        return Credentials("", await log.ask("TFA code: "))

    def reject(self) -> None:
        # Every call asks for a new token anyway
        pass
