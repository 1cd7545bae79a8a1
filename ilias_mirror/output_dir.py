import json
import os
import re
from datetime import datetime
from pathlib import Path, PurePath
from typing import BinaryIO, Optional, Set, Tuple

from .logging import log
from .report import ReportLoadError, SyncReport
from .utils import fmt_path, fmt_real_path, tmp_sibling

SUFFIX_LENGTH = 6
TRIES = 5

# Matches the names produced by tmp_sibling
TMP_FILE_RE = re.compile(r"^\..+\.tmp\.[a-z0-9]{%d,}$" % SUFFIX_LENGTH)


class OutputDirError(Exception):
    pass


class OutputDirectory:
    """
    The local mirror. Knows where things go on disk and how to put them there
    without ever leaving a half-written file at a real path.
    """

    MANIFEST_FILE = PurePath(".manifest.json")
    REPORT_FILE = PurePath(".report")
    COOKIE_FILE = PurePath(".cookies")

    def __init__(self, root: Path):
        if os.name == "nt":
            # Windows limits the path length to 260 for some historical reason.
            # If you want longer paths, you will have to add the "\\?\" prefix
            # in front of your path. See:
            # https://docs.microsoft.com/en-us/windows/win32/fileio/naming-a-file#maximum-path-length-limitation
            self._root = Path("\\\\?\\" + str(root.absolute()))
        else:
            self._root = root

        self._reserved = {self.MANIFEST_FILE, self.REPORT_FILE, self.COOKIE_FILE}
        self._report_path = self.resolve(self.REPORT_FILE)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def manifest_path(self) -> Path:
        return self.resolve(self.MANIFEST_FILE)

    @property
    def cookie_path(self) -> Path:
        return self.resolve(self.COOKIE_FILE)

    def is_reserved(self, path: PurePath) -> bool:
        return path in self._reserved

    def prepare(self) -> None:
        log.explain_topic(f"Creating base directory at {fmt_real_path(self._root)}")

        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError:
            raise OutputDirError("Failed to create base directory")

    def resolve(self, path: PurePath) -> Path:
        """
        May throw an OutputDirError.
        """

        if ".." in path.parts:
            raise OutputDirError(f"Forbidden segment '..' in path {fmt_path(path)}")
        if "." in path.parts:
            raise OutputDirError(f"Forbidden segment '.' in path {fmt_path(path)}")
        if path.is_absolute():
            raise OutputDirError(f"Absolute path {fmt_path(path)} is not allowed")

        return self._root / path

    def local_files(self) -> Set[PurePath]:
        """
        The relative paths of all regular files currently in the mirror,
        except for our own bookkeeping files and temporary files.
        """

        result: Set[PurePath] = set()
        if not self._root.is_dir():
            return result

        for dirpath, _, filenames in os.walk(self._root):
            rel_dir = PurePath(os.path.relpath(dirpath, self._root))
            for name in filenames:
                if TMP_FILE_RE.match(name):
                    continue
                path = rel_dir / name
                if self.is_reserved(path):
                    continue
                result.add(path)

        return result

    def remove_leftover_tmp_files(self) -> None:
        """
        Delete temporary files a previous, killed run left behind.
        """

        if not self._root.is_dir():
            return

        for dirpath, _, filenames in os.walk(self._root):
            for name in filenames:
                if not TMP_FILE_RE.match(name):
                    continue
                path = Path(dirpath) / name
                log.explain(f"Removing leftover temporary file {fmt_real_path(path)}")
                try:
                    path.unlink()
                except OSError as e:
                    log.warn(f"Could not remove {fmt_real_path(path)}: {e}")

    def _make_room(self, path: PurePath) -> Path:
        """
        Create the parent folders of "path". May throw an OutputDirError.
        """

        local_path = self.resolve(path)

        if local_path.is_dir():
            raise OutputDirError(f"There's a directory in place of the file {fmt_path(path)}")

        for parent in path.parents:
            local_parent = self.resolve(parent)
            if local_parent.exists() and not local_parent.is_dir():
                raise OutputDirError(f"Parent {fmt_path(parent)} of {fmt_path(path)} is a file")

        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputDirError(f"Could not create directory for {fmt_path(path)}: {e}")

        return local_path

    def create_tmp_file(self, path: PurePath) -> Tuple[Path, BinaryIO]:
        """
        Create a hidden temporary file next to where "path" will end up.

        May throw an OutputDirError.
        """

        local_path = self._make_room(path)

        for attempt in range(TRIES):
            tmp_path = tmp_sibling(local_path, SUFFIX_LENGTH + 2 * attempt)
            try:
                return tmp_path, open(tmp_path, "xb")
            except FileExistsError:
                pass  # Try again
            except OSError as e:
                raise OutputDirError(f"Could not create temporary file for {fmt_path(path)}: {e}")

        raise OutputDirError("Failed to create temporary file")

    def promote(self, tmp_path: Path, path: PurePath, mtime: Optional[datetime]) -> None:
        """
        Atomically move a finished temporary file to its real path.

        May throw an OutputDirError.
        """

        local_path = self.resolve(path)
        try:
            os.replace(tmp_path, local_path)
        except OSError as e:
            raise OutputDirError(f"Could not move download to {fmt_path(path)}: {e}")

        # Python on Windows crashes when faced with timestamps around the unix epoch
        if mtime is not None and (os.name != "nt" or mtime.year > 1970):
            mtimestamp = mtime.timestamp()
            try:
                os.utime(local_path, times=(mtimestamp, mtimestamp))
            except OSError as e:
                log.explain(f"Could not set modification time of {fmt_path(path)}: {e}")

    def move(self, source: PurePath, target: PurePath) -> None:
        """
        Move a file the mirror wrote earlier to a new path. Never overwrites
        anything at the target.

        May throw an OutputDirError.
        """

        local_source = self.resolve(source)
        if not local_source.is_file():
            raise OutputDirError(f"Can't move {fmt_path(source)}, it is gone")

        local_target = self._make_room(target)
        if local_target.exists():
            raise OutputDirError(f"Can't move {fmt_path(source)}, {fmt_path(target)} exists already")

        try:
            os.replace(local_source, local_target)
        except OSError as e:
            raise OutputDirError(f"Could not move {fmt_path(source)} to {fmt_path(target)}: {e}")

        self._remove_empty_parents(source)

    def delete(self, path: PurePath, expected_size: int) -> bool:
        """
        Delete a file the mirror wrote earlier. Files that were changed locally
        in the meantime (detected by their size) are left alone.
        """

        local_path = self.resolve(path)
        if not local_path.is_file():
            log.explain(f"{fmt_path(path)} is already gone")
            return True

        size = local_path.stat().st_size
        if size != expected_size:
            log.explain(f"{fmt_path(path)} has {size} bytes instead of {expected_size}, keeping it")
            return False

        try:
            local_path.unlink()
        except OSError as e:
            log.warn(f"Could not delete {fmt_path(path)}: {e}")
            return False

        self._remove_empty_parents(path)
        return True

    def _remove_empty_parents(self, path: PurePath) -> None:
        # The last parent is just "."
        for parent in list(path.parents)[:-1]:
            try:
                self.resolve(parent).rmdir()
            except OSError:
                return

    def load_prev_report(self) -> Optional[SyncReport]:
        log.explain_topic(f"Loading previous report from {fmt_real_path(self._report_path)}")
        try:
            report = SyncReport.load(self._report_path)
            log.explain("Loaded report successfully")
            return report
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, ReportLoadError) as e:
            log.explain("Failed to load report")
            log.explain(str(e))
            return None

    def store_report(self, report: SyncReport) -> None:
        log.explain_topic(f"Storing report to {fmt_real_path(self._report_path)}")
        try:
            report.store(self._report_path)
            log.explain("Stored report successfully")
        except OSError as e:
            log.warn(f"Failed to save report to {fmt_real_path(self._report_path)}")
            log.warn_contd(str(e))
