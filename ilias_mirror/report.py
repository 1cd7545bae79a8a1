import json
from pathlib import Path, PurePath
from typing import Any, Dict, List, Set

from .utils import str_path


class ReportLoadError(Exception):
    pass


class SyncReport:
    """
    What a sync run did to the local mirror. Stored next to the manifest so
    the outcome of the last run can be inspected later.
    """

    def __init__(self) -> None:
        self.created: Set[PurePath] = set()
        self.updated: Set[PurePath] = set()
        # New path -> old path, for files that moved remotely
        self.moved: Dict[PurePath, PurePath] = {}
        self.skipped: Set[PurePath] = set()
        # Untracked local files that were not overwritten
        self.conflicts: Set[PurePath] = set()
        # Path -> reason
        self.failed: Dict[PurePath, str] = {}
        # Files whose remote counterpart is gone, but which were kept
        self.orphaned: Set[PurePath] = set()
        self.deleted: Set[PurePath] = set()

        self.encountered_warnings: List[str] = []
        self.encountered_errors: List[str] = []

    @property
    def ok(self) -> bool:
        return not self.failed and not self.encountered_errors

    def counts(self) -> Dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "moved": len(self.moved),
            "skipped": len(self.skipped),
            "conflicts": len(self.conflicts),
            "failed": len(self.failed),
            "orphaned": len(self.orphaned),
            "deleted": len(self.deleted),
        }

    @staticmethod
    def _get_list_of_strs(data: Dict[str, Any], key: str) -> List[str]:
        result: Any = data.get(key, [])

        if not isinstance(result, list):
            raise ReportLoadError(f"Incorrect format: {key!r} is not a list")

        for elem in result:
            if not isinstance(elem, str):
                raise ReportLoadError(f"Incorrect format: {key!r} must contain only strings")

        return result

    @staticmethod
    def _get_str_dictionary(data: Dict[str, Any], key: str) -> Dict[str, str]:
        result: Any = data.get(key, {})

        if not isinstance(result, dict):
            raise ReportLoadError(f"Incorrect format: {key!r} is not a dictionary")

        for k, v in result.items():
            if not isinstance(k, str) or not isinstance(v, str):
                raise ReportLoadError(f"Incorrect format: {key!r} must map strings to strings")

        return result

    @classmethod
    def load(cls, path: Path) -> "SyncReport":
        """
        May raise OSError, UnicodeDecodeError, JsonDecodeError, ReportLoadError.
        """

        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        if not isinstance(data, dict):
            raise ReportLoadError("Incorrect format: Root is not an object")

        self = cls()
        self.created = {PurePath(p) for p in self._get_list_of_strs(data, "created")}
        self.updated = {PurePath(p) for p in self._get_list_of_strs(data, "updated")}
        self.moved = {PurePath(p): PurePath(o) for p, o in self._get_str_dictionary(data, "moved").items()}
        self.skipped = {PurePath(p) for p in self._get_list_of_strs(data, "skipped")}
        self.conflicts = {PurePath(p) for p in self._get_list_of_strs(data, "conflicts")}
        self.failed = {PurePath(p): r for p, r in self._get_str_dictionary(data, "failed").items()}
        self.orphaned = {PurePath(p) for p in self._get_list_of_strs(data, "orphaned")}
        self.deleted = {PurePath(p) for p in self._get_list_of_strs(data, "deleted")}
        self.encountered_warnings = self._get_list_of_strs(data, "encountered_warnings")
        self.encountered_errors = self._get_list_of_strs(data, "encountered_errors")

        return self

    def store(self, path: Path) -> None:
        """
        May raise OSError.
        """

        data = {
            "created": [str_path(p) for p in sorted(self.created)],
            "updated": [str_path(p) for p in sorted(self.updated)],
            "moved": {str_path(p): str_path(old) for p, old in sorted(self.moved.items())},
            "skipped": [str_path(p) for p in sorted(self.skipped)],
            "conflicts": [str_path(p) for p in sorted(self.conflicts)],
            "failed": {str_path(p): reason for p, reason in sorted(self.failed.items())},
            "orphaned": [str_path(p) for p in sorted(self.orphaned)],
            "deleted": [str_path(p) for p in sorted(self.deleted)],
            "encountered_warnings": self.encountered_warnings,
            "encountered_errors": self.encountered_errors,
        }

        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.write("\n")  # json.dump doesn't do this

    def create(self, path: PurePath) -> None:
        self.created.add(path)

    def update(self, path: PurePath) -> None:
        self.updated.add(path)

    def move(self, old: PurePath, new: PurePath) -> None:
        """
        A file that moved remotely counts as updated at its new path.
        """
        self.updated.add(new)
        self.moved[new] = old

    def skip(self, path: PurePath) -> None:
        self.skipped.add(path)

    def conflict(self, path: PurePath) -> None:
        self.conflicts.add(path)

    def fail(self, path: PurePath, reason: str) -> None:
        self.failed[path] = reason

    def orphan(self, path: PurePath) -> None:
        self.orphaned.add(path)

    def delete(self, path: PurePath) -> None:
        self.deleted.add(path)

    def add_error(self, error: str) -> None:
        """
        Adds an error to this report's error list.
        """
        self.encountered_errors.append(error)

    def add_warning(self, warning: str) -> None:
        """
        Adds a warning to this report's warning list.
        """
        self.encountered_warnings.append(warning)
