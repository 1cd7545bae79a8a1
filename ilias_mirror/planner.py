from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import AbstractSet, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .crawl import FileNode, RemoteNode
from .manifest import ManifestEntry
from .utils import str_path


class SyncAction(Enum):
    CREATE = "create"
    UPDATE = "update"
    # The remote file is unchanged but lives at a new path now
    MOVE = "move"
    SKIP = "skip"
    CONFLICT = "conflict"


class OnConflict(Enum):
    """
    What to do with a local file the mirror did not write, sitting where a
    remote file wants to go.
    """

    LOCAL_FIRST = "local-first"
    REMOTE_FIRST = "remote-first"

    @staticmethod
    def from_string(string: str) -> "OnConflict":
        try:
            return OnConflict(string)
        except ValueError:
            raise ValueError("must be one of 'local-first', 'remote-first'")


@dataclass(frozen=True)
class PlannedAction:
    action: SyncAction
    node: FileNode
    # For MOVE and for files that moved remotely, this is the entry at the old path
    entry: Optional[ManifestEntry]
    reason: str

    @property
    def path(self) -> PurePath:
        return self.node.path

    @property
    def moved_from(self) -> Optional[PurePath]:
        if self.entry is None or self.entry.relative_path == self.path:
            return None
        return self.entry.relative_path


@dataclass
class SyncPlan:
    actions: List[PlannedAction] = field(default_factory=list)
    orphaned: List[ManifestEntry] = field(default_factory=list)

    def with_action(self, *actions: SyncAction) -> List[PlannedAction]:
        return [a for a in self.actions if a.action in actions]

    @property
    def transfers(self) -> List[PlannedAction]:
        """
        The actions that require downloading something.
        """

        return self.with_action(SyncAction.CREATE, SyncAction.UPDATE)

    def prioritize(self, paths: AbstractSet[PurePath]) -> None:
        """
        Move the actions for "paths" to the front. The order stays the same
        otherwise.
        """

        self.actions.sort(key=lambda a: a.path not in paths)


def is_below(path: PurePath, roots: Iterable[PurePath]) -> bool:
    for root in roots:
        if path == root or root in path.parents:
            return True
    return False


def _decide(
        node: FileNode,
        entry: Optional[ManifestEntry],
        local_exists: bool,
        on_conflict: OnConflict,
        force: bool,
) -> PlannedAction:
    if entry is None:
        if not local_exists:
            return PlannedAction(SyncAction.CREATE, node, None, "new file")
        if on_conflict == OnConflict.REMOTE_FIRST:
            return PlannedAction(SyncAction.CREATE, node, None, "overwriting untracked local file")
        return PlannedAction(SyncAction.CONFLICT, node, None, "untracked local file is in the way")

    if entry.remote_id != node.remote_id:
        return PlannedAction(SyncAction.UPDATE, node, entry, "replaced by a different remote file")

    fingerprint = node.fingerprint()
    if fingerprint is not None and fingerprint != entry.content_fingerprint:
        return PlannedAction(SyncAction.UPDATE, node, entry, "remote file changed")

    if not local_exists:
        return PlannedAction(SyncAction.UPDATE, node, entry, "local file is missing")

    if force:
        return PlannedAction(SyncAction.UPDATE, node, entry, "downloading again on request")

    return PlannedAction(SyncAction.SKIP, node, entry, "unchanged")


def _decide_moved(node: FileNode, old: ManifestEntry, old_exists: bool, force: bool) -> PlannedAction:
    source = str_path(old.relative_path)

    if not old_exists:
        return PlannedAction(SyncAction.UPDATE, node, old, f"moved from {source}, local file is missing")

    fingerprint = node.fingerprint()
    if fingerprint is not None and fingerprint != old.content_fingerprint:
        return PlannedAction(SyncAction.UPDATE, node, old, f"moved from {source} and changed")

    if force:
        return PlannedAction(SyncAction.UPDATE, node, old, f"moved from {source}, downloading again on request")

    return PlannedAction(SyncAction.MOVE, node, old, f"moved from {source}")


def plan(
        nodes: Sequence[RemoteNode],
        manifest: Mapping[PurePath, ManifestEntry],
        local_paths: AbstractSet[PurePath],
        on_conflict: OnConflict = OnConflict.LOCAL_FIRST,
        incomplete: Sequence[PurePath] = (),
        force: bool = False,
) -> SyncPlan:
    """
    Compare the crawled nodes against the manifest and the files on disk.

    "local_paths" holds the relative paths of all files that currently exist
    in the mirror. "incomplete" lists folders that could not be crawled:
    manifest entries below them are neither orphaned nor touched. With
    "force", files that would be skipped are downloaded again.

    A file that is known under another path (same remote id, and no crawled
    file claims the old path) moved remotely. It is moved locally instead of
    being downloaded again, unless its content changed as well.

    Does no I/O. The actions are in the order of "nodes".
    """

    files = [node for node in nodes if isinstance(node, FileNode)]
    claimed = {node.path for node in files}

    # Entries at paths no crawled file claims, by their remote id. If an id
    # was left behind at several paths, the first path wins.
    unclaimed: Dict[str, ManifestEntry] = {}
    for path in sorted(manifest):
        entry = manifest[path]
        if path not in claimed:
            unclaimed.setdefault(entry.remote_id, entry)

    result = SyncPlan()
    moved_away: Set[PurePath] = set()

    for node in files:
        entry = manifest.get(node.path)
        local_exists = node.path in local_paths

        old = unclaimed.get(node.remote_id)
        if entry is None and not local_exists and old is not None:
            del unclaimed[node.remote_id]
            moved_away.add(old.relative_path)
            result.actions.append(_decide_moved(node, old, old.relative_path in local_paths, force))
        else:
            result.actions.append(_decide(node, entry, local_exists, on_conflict, force))

    for path in sorted(manifest):
        if path in claimed or path in moved_away or is_below(path, incomplete):
            continue
        result.orphaned.append(manifest[path])

    return result
