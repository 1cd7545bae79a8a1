from pathlib import PurePath
from typing import Dict, Iterator, Optional

from .logging import log
from .utils import fmt_path


def name_variants(path: PurePath) -> Iterator[PurePath]:
    separator = " " if " " in path.stem else "_"
    i = 1
    while True:
        yield path.parent / f"{path.stem}{separator}{i}{path.suffix}"
        i += 1


class Deduplicator:
    """
    Hands out local paths for remote objects so that no two objects end up at
    the same path. The first object to ask for a path gets it, later ones get
    "name_1.ext", "name_2.ext" and so on.

    With windows_paths enabled, names are also made valid on Windows, and
    paths differing only in case count as the same path.
    """

    FORBIDDEN_CHARS = '<>:"/\\|?*' + "".join([chr(i) for i in range(0, 32)])
    FORBIDDEN_NAMES = {
        "CON", "PRN", "AUX", "NUL",
        "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
        "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9",
    }

    def __init__(self, windows_paths: bool) -> None:
        self._windows_paths = windows_paths

        # Normalized path -> remote id that owns it. Parents of taken paths
        # are owned by None.
        self._owners: Dict[PurePath, Optional[str]] = {}

    def _key(self, path: PurePath) -> PurePath:
        if self._windows_paths:
            return PurePath(*[part.casefold() for part in path.parts])
        return path

    def _taken(self, path: PurePath) -> bool:
        return self._key(path) in self._owners

    def _add(self, path: PurePath, remote_id: Optional[str]) -> None:
        self._owners[self._key(path)] = remote_id

        # The last parent is just "."
        for parent in list(path.parents)[:-1]:
            self._owners.setdefault(self._key(parent), None)

    def _fixup_element(self, name: str) -> str:
        # For historical reasons, windows paths have some odd restrictions that
        # we're trying to avoid. See:
        # https://docs.microsoft.com/en-us/windows/win32/fileio/naming-a-file

        for char in self.FORBIDDEN_CHARS:
            name = name.replace(char, "_")

        path = PurePath(name)
        if path.stem.upper() in self.FORBIDDEN_NAMES:
            name = f"{path.stem}_{path.suffix}"

        if name.endswith(" ") or name.endswith("."):
            name += "_"

        return name

    def fixup_path(self, path: PurePath) -> PurePath:
        """
        Make the path valid on windows if enabled, return it unchanged
        otherwise.
        """

        if not self._windows_paths:
            return path

        new_path = PurePath(*[self._fixup_element(elem) for elem in path.parts])
        if new_path != path:
            log.explain(f"Changed path to {fmt_path(new_path)} for windows compatibility")
        return new_path

    def mark(self, path: PurePath, remote_id: Optional[str] = None) -> PurePath:
        """
        Claim a path for the object "remote_id". Returns the path the object
        was given, which differs from "path" if it was taken already.
        """

        path = self.fixup_path(path)

        if not self._taken(path):
            self._add(path, remote_id)
            return path

        if remote_id is not None and self._owners[self._key(path)] == remote_id:
            return path

        log.explain(f"Path {fmt_path(path)} is already taken, finding a new name")

        for variant in name_variants(path):
            if self._taken(variant):
                log.explain(f"Path {fmt_path(variant)} is taken as well")
                continue

            log.explain(f"Found unused path {fmt_path(variant)}")
            self._add(variant, remote_id)
            return variant

        # The "name_variants" iterator returns infinitely many paths
        raise RuntimeError("Unreachable")
