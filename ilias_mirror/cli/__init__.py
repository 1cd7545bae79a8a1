# isort: skip_file

# Each command module registers itself with the parser from ".parser" when
# imported, so these imports are needed for their side effect.

from . import command_sync  # noqa: F401 imported but unused
from .parser import PARSER, ParserLoadError, general_options  # noqa: F401 imported but unused
