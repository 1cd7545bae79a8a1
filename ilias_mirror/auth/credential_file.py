from pathlib import Path
from typing import Dict

from ..config import Config
from ..utils import fmt_real_path
from .authenticator import Authenticator, AuthLoadError, AuthSection, Credentials


class CredentialFileAuthSection(AuthSection):
    def path(self) -> Path:
        value = self.s.get("path")
        if value is None:
            self.missing_value("path")
        return Path(value).expanduser()


def parse_credential_file(text: str) -> Dict[str, str]:
    """
    Parse "key=value" lines. Blank lines and lines starting with "#" are
    skipped, values are taken verbatim.
    """

    values: Dict[str, str] = {}
    for number, line in enumerate(text.splitlines(), start=1):
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            raise AuthLoadError(f"Line {number} of the credential file is not of the form 'key=value'")
        values[key.strip()] = value
    return values


class CredentialFileAuthenticator(Authenticator):
    """
    Reads username and password from a file like

        # ILIAS account
        username=<username>
        password=<password>
    """

    def __init__(self, name: str, section: CredentialFileAuthSection, config: Config) -> None:
        super().__init__(name)

        path = config.general.working_dir() / section.path()
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            raise AuthLoadError(f"Credential file at {fmt_real_path(path)} is not encoded using UTF-8")
        except OSError as e:
            raise AuthLoadError(f"No credential file at {fmt_real_path(path)}") from e

        values = parse_credential_file(text)
        missing = [key for key in ("username", "password") if key not in values]
        if missing:
            raise AuthLoadError(f"Credential file at {fmt_real_path(path)} has no {' or '.join(missing)}")

        self._credentials = Credentials(values["username"], values["password"])

    async def credentials(self) -> Credentials:
        return self._credentials
