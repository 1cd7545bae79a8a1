import fnmatch
from pathlib import PurePath
from typing import List, Sequence

from .logging import log
from .utils import fmt_path, str_path


def parse_patterns(text: str) -> List[str]:
    """
    One glob pattern per line. Blank lines and lines starting with "#" are
    ignored.
    """

    patterns = []
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            patterns.append(line)
    return patterns


class Filter:
    """
    Decides which remote paths are synced, based on glob patterns matched
    against the whole relative path ("Course/Slides/*.pdf") and against the
    last path element alone ("*.pdf").

    Exclude patterns apply to folders and files, and an excluded folder is not
    even crawled. Include patterns only apply to files: if any are given, a
    file must match one of them.
    """

    def __init__(self, include: Sequence[str] = (), exclude: Sequence[str] = ()):
        self._include = list(include)
        self._exclude = list(exclude)

    @staticmethod
    def _matches(path: PurePath, patterns: Sequence[str]) -> bool:
        full = str_path(path)
        for pattern in patterns:
            if fnmatch.fnmatchcase(full, pattern) or fnmatch.fnmatchcase(path.name, pattern):
                return True
        return False

    def is_excluded(self, path: PurePath) -> bool:
        if self._matches(path, self._exclude):
            log.explain(f"{fmt_path(path)} matches an exclude pattern")
            return True
        return False

    def crawl_folder(self, path: PurePath) -> bool:
        return not self.is_excluded(path)

    def sync_file(self, path: PurePath) -> bool:
        if self.is_excluded(path):
            return False
        if self._include and not self._matches(path, self._include):
            log.explain(f"{fmt_path(path)} matches no include pattern")
            return False
        return True
