import asyncio
from dataclasses import dataclass
from pathlib import PurePath
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Set, Tuple

from ..deduplicator import Deduplicator
from ..filter import Filter
from ..limiter import Limiter
from ..logging import Status, log
from ..retry import iorepeat
from ..session import SessionManager
from ..utils import fmt_path, soupify
from .ilias_html import FOLDER_TYPES, IliasElementType, IliasPage, IliasPageElement, parse_ilias_url
from .nodes import FileNode, FolderNode, RemoteNode

# Elements that end up as a file in the mirror. Forum threads are saved as
# their HTML page.
_FILE_TYPES = {IliasElementType.FILE, IliasElementType.VIDEO, IliasElementType.FORUM_THREAD}


class CrawlWarning(Exception):
    pass


class CrawlError(Exception):
    pass


@dataclass(frozen=True)
class CrawlFailure:
    path: PurePath
    url: str
    reason: str


@dataclass(frozen=True)
class _Folder:
    remote_id: str
    url: str
    path: PurePath


class TreeCrawler:
    """
    Walks the ILIAS object graph below a root page and yields every folder and
    file it finds, each exactly once.

    The walk is breadth-first. All folders of one level are listed
    concurrently, but their children are emitted in a fixed order (parents in
    the order they were emitted, children sorted by name and id), so every
    object gets the same path on every run as long as the remote side does not
    change. An object linked from several folders is emitted only for the
    first of them.

    Folders that could not be listed are recorded in "failures" and skipped,
    the rest of the walk goes on.
    """

    def __init__(
            self,
            session: SessionManager,
            limiter: Limiter,
            filter: Optional[Filter] = None,
            deduplicator: Optional[Deduplicator] = None,
            attempts: int = 3,
            backoff: float = 1.0,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
            videos: bool = True,
            forums: bool = False,
            skip_files: bool = False,
    ):
        self._session = session
        self._limiter = limiter
        self._filter = filter or Filter()
        self._deduplicator = deduplicator or Deduplicator(windows_paths=False)
        self._attempts = attempts
        self._backoff = backoff
        self._sleep = sleep
        self._videos = videos
        self._forums = forums
        self._skip_files = skip_files

        self._failures: List[CrawlFailure] = []

    @property
    def failures(self) -> List[CrawlFailure]:
        return list(self._failures)

    @property
    def incomplete_paths(self) -> List[PurePath]:
        """
        Folders whose contents are not fully known because listing them
        failed.
        """

        return [failure.path for failure in self._failures]

    @property
    def error_free(self) -> bool:
        return not self._failures

    async def crawl(self, root_url: str) -> AsyncIterator[RemoteNode]:
        root_id = parse_ilias_url(root_url).ref_id or root_url
        log.explain_topic(f"Crawling {root_url} (id {root_id})")

        visited: Set[str] = {root_id}
        frontier = [_Folder(root_id, root_url, PurePath())]

        while frontier:
            listings = await self._list_level(frontier)
            next_frontier: List[_Folder] = []

            for parent, children in zip(frontier, listings):
                if children is None:
                    continue

                for element in sorted(children, key=lambda e: (e.name, e.remote_id)):
                    if element.remote_id in visited:
                        log.explain(f"Already seen {element.name!r} (id {element.remote_id}), skipping it")
                        continue

                    node = self._to_node(parent, element)
                    if node is None:
                        continue
                    visited.add(element.remote_id)

                    if isinstance(node, FolderNode):
                        next_frontier.append(_Folder(node.remote_id, node.url, node.path))
                    yield node

            frontier = next_frontier

    def _to_node(self, parent: _Folder, element: IliasPageElement) -> Optional[RemoteNode]:
        path = parent.path / element.name

        if self._descend_into(element.type):
            if not self._filter.crawl_folder(path):
                log.status(Status.EXCLUDED, fmt_path(path))
                return None
            path = self._deduplicator.mark(path, element.remote_id)
            return FolderNode(
                remote_id=element.remote_id,
                display_name=element.name,
                parent_id=parent.remote_id,
                path=path,
                url=element.url,
            )

        if element.type in _FILE_TYPES:
            if element.type == IliasElementType.FILE and self._skip_files:
                log.status(Status.IGNORED, fmt_path(path), "[bright_black](files are skipped)")
                return None
            if not self._filter.sync_file(path):
                log.status(Status.EXCLUDED, fmt_path(path))
                return None
            path = self._deduplicator.mark(path, element.remote_id)
            return FileNode(
                remote_id=element.remote_id,
                display_name=element.name,
                parent_id=parent.remote_id,
                path=path,
                download_handle=element.url,
                size_hint=element.size,
                modified_hint=element.mtime,
                version_hint=element.version,
                via_player=element.type == IliasElementType.VIDEO,
            )

        note = element.type.value
        if element.type == IliasElementType.VIDEO_SERIES:
            note = "videos are turned off"
        elif element.type == IliasElementType.FORUM:
            note = "forums are turned off"
        log.status(Status.IGNORED, fmt_path(path), f"[bright_black]({note})")
        return None

    def _descend_into(self, element_type: IliasElementType) -> bool:
        if element_type == IliasElementType.VIDEO_SERIES:
            return self._videos
        if element_type == IliasElementType.FORUM:
            return self._forums
        return element_type in FOLDER_TYPES

    async def _list_level(self, frontier: List[_Folder]) -> List[Optional[List[IliasPageElement]]]:
        tasks = [asyncio.ensure_future(self._expand(folder)) for folder in frontier]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def _expand(self, folder: _Folder) -> Optional[List[IliasPageElement]]:
        try:
            return await self._list_folder(folder.url, folder.path)
        except (CrawlWarning, CrawlError) as e:
            log.warn(f"Could not crawl {fmt_path(folder.path)}")
            log.warn_contd(str(e))
            self._failures.append(CrawlFailure(folder.path, folder.url, str(e)))
            return None

    async def _list_folder(self, url: str, path: PurePath) -> List[IliasPageElement]:
        @iorepeat(self._attempts, f"crawling {fmt_path(path)}", CrawlWarning, self._backoff, self._sleep)
        async def impl() -> List[IliasPageElement]:
            async with self._limiter.limit_crawl():
                with log.crawl_bar(fmt_path(path)):
                    page = await self._get_page(url)
                    if full_url := page.get_full_listing_url():
                        log.explain(f"Listing is incomplete, loading {full_url}")
                        page = await self._get_page(full_url)
                    elements = page.get_child_elements()
            log.status(Status.CRAWLED, fmt_path(path))
            return elements

        return await impl()

    async def _get_page(self, url: str) -> IliasPage:
        version = await self._session.current_version()
        page, status = await self._fetch(url)
        if page.is_logged_in():
            return self._check_page(page, status)

        log.explain("Not logged in anymore, authenticating again")
        await self._session.ensure_valid(version)

        # Retry once after authenticating. If this fails, we give up on this folder.
        page, status = await self._fetch(url)
        if page.is_logged_in():
            return self._check_page(page, status)
        raise CrawlError(f"Still not logged in after authenticating, while loading {url}")

    async def _fetch(self, url: str) -> Tuple[IliasPage, int]:
        async with self._session.get(url) as response:
            return IliasPage(soupify(await response.read()), str(response.url)), response.status

    @staticmethod
    def _check_page(page: IliasPage, status: int) -> IliasPage:
        if message := page.get_error_message():
            raise CrawlError(f"ILIAS showed an error on {page.url}: {message}")
        if page.is_root_page():
            # ILIAS sends us to the repository root for objects we may not see
            raise CrawlError(f"Got redirected to the repository root while loading {page.url}")
        if status != 200:
            raise CrawlError(f"Server responded with status {status} for {page.url}")
        return page
