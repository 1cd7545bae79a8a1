from configparser import SectionProxy

from ..config import Config, ConfigOptionError
from .authenticator import (Authenticator, AuthError, AuthErrorKind, AuthLoadError, AuthSection,  # noqa: F401
                            Credentials)
from .credential_file import CredentialFileAuthenticator, CredentialFileAuthSection
from .keyring import KeyringAuthenticator, KeyringAuthSection
from .simple import SimpleAuthenticator, SimpleAuthSection
from .tfa import TfaAuthenticator

AUTH_TYPES = ["credential-file", "keyring", "simple", "tfa"]


def load_authenticator(name: str, section: SectionProxy, config: Config) -> Authenticator:
    """
    Build the authenticator an "auth:<name>" section describes.

    May throw a ConfigOptionError or an AuthLoadError.
    """

    auth_type = AuthSection(section).type()
    if auth_type == "credential-file":
        return CredentialFileAuthenticator(name, CredentialFileAuthSection(section), config)
    if auth_type == "keyring":
        return KeyringAuthenticator(name, KeyringAuthSection(section))
    if auth_type == "simple":
        return SimpleAuthenticator(name, SimpleAuthSection(section))
    if auth_type == "tfa":
        return TfaAuthenticator(name)

    raise ConfigOptionError(name, "type", f"Unknown authenticator type {auth_type!r}, expected one of {AUTH_TYPES}")
