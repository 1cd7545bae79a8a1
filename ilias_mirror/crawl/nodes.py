from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import PurePath
from typing import Optional, Union


class NodeKind(Enum):
    FOLDER = "folder"
    FILE = "file"


@dataclass(frozen=True)
class FolderNode:
    remote_id: str
    display_name: str
    parent_id: Optional[str]
    path: PurePath
    url: str

    @property
    def kind(self) -> NodeKind:
        return NodeKind.FOLDER


@dataclass(frozen=True)
class FileNode:
    remote_id: str
    display_name: str
    parent_id: Optional[str]
    path: PurePath
    download_handle: str
    size_hint: Optional[int] = None
    modified_hint: Optional[datetime] = None
    version_hint: Optional[str] = None
    # download_handle is an Opencast player page that names the actual stream
    via_player: bool = False

    @property
    def kind(self) -> NodeKind:
        return NodeKind.FILE

    def fingerprint(self) -> Optional[str]:
        """
        A cheap stand-in for the file's content, built from what the folder
        listing tells us. None if the listing told us nothing.
        """

        if self.size_hint is None and self.modified_hint is None and self.version_hint is None:
            return None

        size = "?" if self.size_hint is None else str(self.size_hint)
        mtime = "?" if self.modified_hint is None else self.modified_hint.isoformat()
        version = "?" if self.version_hint is None else self.version_hint
        return f"size={size};mtime={mtime};version={version}"


# No third kind exists. Consumers match on the concrete class and must handle
# both.
RemoteNode = Union[FolderNode, FileNode]
