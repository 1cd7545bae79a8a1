from .crawler import CrawlError, CrawlFailure, CrawlWarning, TreeCrawler  # noqa: F401
from .nodes import FileNode, FolderNode, NodeKind, RemoteNode  # noqa: F401
