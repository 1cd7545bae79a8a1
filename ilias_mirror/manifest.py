import json
import os
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path, PurePath
from typing import Any, Dict, Optional

from .logging import log
from .utils import fmt_real_path, str_path, tmp_sibling

SUFFIX_LENGTH = 6


class ManifestError(Exception):
    """
    The manifest could not be read or written. Continuing without it would
    risk downloading everything again, so this ends the run.
    """


@dataclass(frozen=True)
class ManifestEntry:
    relative_path: PurePath
    remote_id: str
    content_fingerprint: Optional[str]
    # Bytes actually written to disk
    size: int
    last_synced_at: datetime
    stale: bool = False

    def to_json(self) -> Dict[str, Any]:
        return {
            "path": str_path(self.relative_path),
            "remote_id": self.remote_id,
            "fingerprint": self.content_fingerprint,
            "size": self.size,
            "synced_at": self.last_synced_at.isoformat(),
            "stale": self.stale,
        }

    @staticmethod
    def from_json(data: Any) -> "ManifestEntry":
        if not isinstance(data, dict):
            raise ManifestError("Incorrect format: entry is not an object")

        path = data.get("path")
        remote_id = data.get("remote_id")
        fingerprint = data.get("fingerprint")
        size = data.get("size")
        synced_at = data.get("synced_at")
        stale = data.get("stale", False)

        if not isinstance(path, str) or not path:
            raise ManifestError("Incorrect format: 'path' must be a non-empty string")
        if not isinstance(remote_id, str):
            raise ManifestError(f"Incorrect format: 'remote_id' of {path!r} must be a string")
        if fingerprint is not None and not isinstance(fingerprint, str):
            raise ManifestError(f"Incorrect format: 'fingerprint' of {path!r} must be a string or null")
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise ManifestError(f"Incorrect format: 'size' of {path!r} must be a non-negative integer")
        if not isinstance(synced_at, str):
            raise ManifestError(f"Incorrect format: 'synced_at' of {path!r} must be a string")
        if not isinstance(stale, bool):
            raise ManifestError(f"Incorrect format: 'stale' of {path!r} must be a boolean")

        try:
            last_synced_at = datetime.fromisoformat(synced_at)
        except ValueError:
            raise ManifestError(f"Incorrect format: 'synced_at' of {path!r} is not a date")

        return ManifestEntry(PurePath(path), remote_id, fingerprint, size, last_synced_at, stale)


class ManifestStore:
    """
    Remembers which remote file each local file came from, and what the
    remote file looked like back then.

    Changes are kept in memory until commit() writes them to disk. Writing goes
    through a temporary file, so the file on disk is always either the old or
    the new manifest.
    """

    FORMAT_VERSION = 1

    def __init__(self, path: Path):
        self._path = path
        self._entries: Dict[PurePath, ManifestEntry] = {}
        self._dirty = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def entries(self) -> Dict[PurePath, ManifestEntry]:
        return dict(self._entries)

    def get(self, path: PurePath) -> Optional[ManifestEntry]:
        return self._entries.get(path)

    def load(self) -> Dict[PurePath, ManifestEntry]:
        """
        Read the manifest from disk. A missing file is an empty manifest.

        May throw a ManifestError.
        """

        log.explain_topic(f"Loading manifest from {fmt_real_path(self._path)}")

        if not self._path.exists():
            log.explain("No manifest yet, starting from scratch")
            self._entries = {}
            self._dirty = False
            return {}

        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestError(f"Could not read manifest at {fmt_real_path(self._path)}: {e}") from e

        if not isinstance(data, dict):
            raise ManifestError("Incorrect format: Root is not an object")

        version = data.get("version")
        if version != self.FORMAT_VERSION:
            raise ManifestError(f"Unsupported manifest version {version!r}")

        files = data.get("files", [])
        if not isinstance(files, list):
            raise ManifestError("Incorrect format: 'files' is not a list")

        entries: Dict[PurePath, ManifestEntry] = {}
        for elem in files:
            entry = ManifestEntry.from_json(elem)
            if entry.relative_path in entries:
                raise ManifestError(f"Incorrect format: duplicate path {str_path(entry.relative_path)!r}")
            entries[entry.relative_path] = entry

        log.explain(f"Loaded {len(entries)} entries")
        self._entries = entries
        self._dirty = False
        return dict(entries)

    def record(self, entry: ManifestEntry) -> None:
        self._entries[entry.relative_path] = entry
        self._dirty = True

    def remove(self, path: PurePath) -> None:
        if self._entries.pop(path, None) is not None:
            self._dirty = True

    def mark_stale(self, path: PurePath) -> None:
        entry = self._entries.get(path)
        if entry is None or entry.stale:
            return
        self._entries[path] = replace(entry, stale=True)
        self._dirty = True

    def commit(self) -> None:
        """
        Write the manifest to disk. Retries once, then gives up.

        May throw a ManifestError.
        """

        log.explain_topic(f"Storing manifest to {fmt_real_path(self._path)}")

        data = {
            "version": self.FORMAT_VERSION,
            "files": [self._entries[path].to_json() for path in sorted(self._entries)],
        }

        last_error: Optional[OSError] = None
        for attempt in range(2):
            try:
                self._write(data, SUFFIX_LENGTH + 2 * attempt)
                self._dirty = False
                log.explain("Stored manifest successfully")
                return
            except OSError as e:
                log.explain(f"Storing the manifest failed: {e}")
                last_error = e

        raise ManifestError(f"Could not write manifest to {fmt_real_path(self._path)}: {last_error}")

    def _write(self, data: Dict[str, Any], suffix_length: int) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = tmp_sibling(self._path, suffix_length)
        try:
            with open(tmp_path, "x", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.write("\n")  # json.dump doesn't do this
            os.replace(tmp_path, self._path)
        finally:
            tmp_path.unlink(missing_ok=True)
