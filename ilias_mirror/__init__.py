import importlib.metadata
import warnings

from .version import NAME

try:
    __version__ = importlib.metadata.version(NAME)
except importlib.metadata.PackageNotFoundError as e:
    warnings.warn(f"Could not determine version of {NAME}. "
                  f"Is it installed?\n{e!s}", stacklevel=2)
    __version__ = "unknown"
