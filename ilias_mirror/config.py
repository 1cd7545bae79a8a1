import os
from configparser import ConfigParser, SectionProxy
from pathlib import Path
from typing import Any, Callable, List, Mapping, NoReturn, Optional, Tuple, TypeVar

from .logging import log
from .utils import fmt_real_path
from .version import NAME

T = TypeVar("T")


class ConfigLoadError(Exception):
    """
    The config file could not be read.
    """

    def __init__(self, path: Path, reason: str):
        super().__init__(f"Failed to load config from {fmt_real_path(path)}")
        self.path = path
        self.reason = reason


class ConfigOptionError(Exception):
    """
    An option in the config file has an invalid or missing value.
    """

    def __init__(self, section: str, key: str, desc: str):
        super().__init__(f"Section {section!r}, key {key!r}: {desc}")
        self.section = section
        self.key = key
        self.desc = desc


class Section:
    """
    Typed access to one section of the config file. Every accessor raises a
    ConfigOptionError naming the section and key if the value is unusable.
    """

    def __init__(self, section: SectionProxy):
        self.s = section

    def error(self, key: str, desc: str) -> NoReturn:
        raise ConfigOptionError(self.s.name, key, desc)

    def invalid_value(self, key: str, value: Any, reason: Optional[str]) -> NoReturn:
        if reason is None:
            self.error(key, f"Invalid value {value!r}")
        self.error(key, f"Invalid value {value!r}: {reason}")

    def missing_value(self, key: str) -> NoReturn:
        self.error(key, "Missing value")

    def _convert(self, key: str, convert: Callable[..., Any], fallback: Any) -> Any:
        try:
            return convert(key, fallback=fallback)
        except ValueError as e:
            self.invalid_value(key, self.s.get(key), str(e))

    def boolean(self, key: str, fallback: bool) -> bool:
        return self._convert(key, self.s.getboolean, fallback)

    def integer(self, key: str, fallback: Optional[int]) -> Optional[int]:
        return self._convert(key, self.s.getint, fallback)

    def positive_int(self, key: str, fallback: int) -> int:
        value = self._convert(key, self.s.getint, fallback)
        if value <= 0:
            self.invalid_value(key, value, "Must be greater than 0")
        return value

    def positive_float(self, key: str, fallback: float) -> float:
        value = self._convert(key, self.s.getfloat, fallback)
        if value <= 0:
            self.invalid_value(key, value, "Must be greater than 0")
        return value

    def choice(self, key: str, fallback: str, from_string: Callable[[str], T]) -> T:
        value = self.s.get(key, fallback)
        try:
            return from_string(value)
        except ValueError as e:
            self.invalid_value(key, value, str(e).capitalize())


class GeneralSection(Section):
    """
    The DEFAULT section: where the mirrors live and how chatty a run is.
    """

    def working_dir(self) -> Path:
        return Path(self.s.get("working_dir", ".")).expanduser()

    def explain(self) -> bool:
        return self.boolean("explain", fallback=False)

    def status(self) -> bool:
        return self.boolean("status", fallback=True)

    def report(self) -> bool:
        return self.boolean("report", fallback=True)

    def show_orphaned(self) -> bool:
        return self.boolean("show_orphaned", fallback=True)


class Config:
    """
    A config file holds general options in its DEFAULT section, one
    "sync:<name>" section per mirrored course or folder and one
    "auth:<name>" section per set of credentials the syncs refer to.
    """

    def __init__(self, parser: ConfigParser):
        self._parser = parser

    @staticmethod
    def default_path() -> Path:
        if os.name == "nt":
            return Path(f"~/AppData/Roaming/{NAME}/{NAME}.cfg").expanduser()
        return Path(f"~/.config/{NAME}/{NAME}.cfg").expanduser()

    @classmethod
    def from_file(cls, path: Optional[Path] = None) -> "Config":
        """
        May throw a ConfigLoadError.
        """

        if path is None:
            path = cls.default_path()
        log.explain(f"Loading {fmt_real_path(path)}")

        parser = ConfigParser(interpolation=None)
        # parser.read would silently skip a missing file
        try:
            with open(path, encoding="utf-8") as f:
                parser.read_file(f, source=str(path))
        except FileNotFoundError:
            raise ConfigLoadError(path, "File does not exist")
        except IsADirectoryError:
            raise ConfigLoadError(path, "That's a directory, not a file")
        except PermissionError:
            raise ConfigLoadError(path, "Insufficient permissions")
        except UnicodeDecodeError:
            raise ConfigLoadError(path, "File is not encoded using UTF-8")

        return cls(parser)

    @property
    def general(self) -> GeneralSection:
        return GeneralSection(self._parser[self._parser.default_section])

    def override_general(self, values: Mapping[str, str]) -> None:
        """
        Replace general options, e. g. with the ones given on the command line.
        """

        self._parser[self._parser.default_section].update(values)

    def sections(self, prefix: str) -> List[Tuple[str, SectionProxy]]:
        """
        All sections whose name starts with "prefix", in file order.
        """

        return [(name, proxy) for name, proxy in self._parser.items() if name.startswith(prefix)]
