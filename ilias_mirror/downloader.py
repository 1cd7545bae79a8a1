import asyncio
from dataclasses import replace
from datetime import datetime
from pathlib import PurePath
from typing import Awaitable, Callable, Dict, List, Optional, Set

import aiohttp
from aiohttp import hdrs
from yarl import URL

from .crawl import FileNode
from .crawl.ilias_html import IliasPage
from .limiter import Limiter
from .logging import ProgressBar, Status, log
from .manifest import ManifestEntry, ManifestStore
from .output_dir import OutputDirectory, OutputDirError
from .planner import PlannedAction, SyncAction, SyncPlan
from .report import SyncReport
from .retry import iorepeat
from .session import SessionManager
from .utils import fmt_path, soupify


class DownloadError(Exception):
    pass


class DownloadEngine:
    """
    Carries out a SyncPlan: downloads every file that is new or changed and
    records each finished download in the manifest.

    A file that can't be downloaded is reported as failed, the other downloads
    are not affected by it.
    """

    def __init__(
            self,
            session: SessionManager,
            limiter: Limiter,
            output_dir: OutputDirectory,
            manifest: ManifestStore,
            attempts: int = 3,
            backoff: float = 1.0,
            manifest_batch: int = 25,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session = session
        self._limiter = limiter
        self._output_dir = output_dir
        self._manifest = manifest
        self._attempts = attempts
        self._backoff = backoff
        self._manifest_batch = manifest_batch
        self._sleep = sleep

        self._path_locks: Dict[PurePath, asyncio.Lock] = {}
        self._uncommitted = 0

    def _lock_for(self, path: PurePath) -> asyncio.Lock:
        if path not in self._path_locks:
            self._path_locks[path] = asyncio.Lock()
        return self._path_locks[path]

    async def execute(self, plan: SyncPlan, report: Optional[SyncReport] = None) -> SyncReport:
        """
        May throw a ManifestError or an AuthError, both of which end the run.
        Everything that went wrong with single files ends up in the report.
        """

        if report is None:
            report = SyncReport()

        for action in plan.with_action(SyncAction.SKIP):
            log.explain(f"Skipping {fmt_path(action.path)}: {action.reason}")
            report.skip(action.path)
            if action.entry is not None and action.entry.stale:
                # The file is back
                self._manifest.record(replace(action.entry, stale=False))

        for action in plan.with_action(SyncAction.CONFLICT):
            log.status(Status.CONFLICT, fmt_path(action.path), f"[red]({action.reason})")
            report.conflict(action.path)

        # Sources of moves are paths no crawled file claims, so they never
        # collide with the downloads below
        for action in plan.with_action(SyncAction.MOVE):
            self._move(action, report)

        transfers: List[PlannedAction] = []
        seen_ids: Set[str] = set()
        for action in plan.transfers:
            if action.node.remote_id in seen_ids:
                log.explain(f"{action.node.remote_id} was planned twice, downloading it only once")
                continue
            seen_ids.add(action.node.remote_id)
            transfers.append(action)

        tasks = [asyncio.ensure_future(self._transfer(action, report)) for action in transfers]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            # Also on cancellation, so finished downloads are not lost
            if self._manifest.dirty:
                self._manifest.commit()
            self._uncommitted = 0

        return report

    def _move(self, action: PlannedAction, report: SyncReport) -> None:
        entry = action.entry
        assert entry is not None
        old, new = entry.relative_path, action.path

        try:
            self._output_dir.move(old, new)
        except OutputDirError as e:
            log.status(Status.FAILED, fmt_path(new))
            log.warn_contd(str(e))
            report.fail(new, str(e))
            return

        self._manifest.remove(old)
        self._manifest.record(replace(entry, relative_path=new, last_synced_at=datetime.now(), stale=False))
        log.status(Status.MOVED, fmt_path(new), f"[bright_black](from {fmt_path(old)})")
        report.move(old, new)

    async def _transfer(self, action: PlannedAction, report: SyncReport) -> None:
        path = action.path
        node = action.node

        async with self._lock_for(path):
            try:
                size = await self._download(node)
            except (DownloadError, OutputDirError) as e:
                log.status(Status.FAILED, fmt_path(path))
                log.warn_contd(str(e))
                report.fail(path, str(e))
                return

            self._manifest.record(ManifestEntry(
                relative_path=path,
                remote_id=node.remote_id,
                content_fingerprint=node.fingerprint(),
                size=size,
                last_synced_at=datetime.now(),
            ))

            if (old := action.moved_from) is not None:
                # The copy at the old path is outdated, unless the user changed it
                assert action.entry is not None
                self._manifest.remove(old)
                self._output_dir.delete(old, action.entry.size)
                log.status(Status.MOVED, fmt_path(path), f"[bright_black](from {fmt_path(old)}, changed)")
                report.move(old, path)
            elif action.action == SyncAction.CREATE:
                log.status(Status.ADDED, fmt_path(path))
                report.create(path)
            else:
                log.status(Status.CHANGED, fmt_path(path))
                report.update(path)

            self._uncommitted += 1
            if self._uncommitted >= self._manifest_batch:
                self._manifest.commit()
                self._uncommitted = 0

    async def _download(self, node: FileNode) -> int:
        @iorepeat(self._attempts, f"downloading {fmt_path(node.path)}", DownloadError, self._backoff, self._sleep)
        async def impl() -> int:
            async with self._limiter.limit_download():
                with log.download_bar(fmt_path(node.path)) as bar:
                    if node.via_player:
                        return await self._download_video(node, bar)
                    return await self._download_once(node, bar)

        return await impl()

    async def _download_video(self, node: FileNode, bar: ProgressBar) -> int:
        version = await self._session.current_version()
        page = await self._get_player(node)
        if not page.is_logged_in():
            log.explain("Player page wants a login, authenticating again")
            await self._session.ensure_valid(version)
            page = await self._get_player(node)
            if not page.is_logged_in():
                raise DownloadError(f"Player page still wants a login after authenticating, for {node.download_handle}")

        stream_url = page.get_video_stream_url()
        if stream_url is None:
            raise DownloadError(f"No video stream found on {node.download_handle}")
        log.explain(f"Streaming video from {stream_url}")

        async with self._session.get(stream_url) as response:
            if response.status != 200:
                raise DownloadError(f"Server responded with status {response.status} for {stream_url}")
            return await self._stream_to_disk(node, response, bar)

    async def _get_player(self, node: FileNode) -> IliasPage:
        async with self._session.get(node.download_handle) as response:
            if response.status != 200:
                raise DownloadError(f"Server responded with status {response.status} for {node.download_handle}")
            return IliasPage(soupify(await response.read()), str(response.url))

    async def _download_once(self, node: FileNode, bar: ProgressBar) -> int:
        version = await self._session.current_version()
        size = await self._try_stream(node, bar)
        if size is not None:
            return size

        log.explain("Download was redirected, authenticating again")
        await self._session.ensure_valid(version)

        size = await self._try_stream(node, bar)
        if size is None:
            raise DownloadError(f"File streaming failed after authenticating, for {node.download_handle}")
        return size

    async def _try_stream(self, node: FileNode, bar: ProgressBar) -> Optional[int]:
        """
        Returns None if the server wants us to log in first, the number of
        bytes written otherwise.
        """

        next_url = node.download_handle

        # Files redirect to the login page if we are not authenticated. As files
        # could be HTML, we can not match on the content type here. Instead, we
        # disallow redirects and inspect the new location. If we are redirected
        # anywhere but the "sendfile" command, our login expired.
        async with self._session.get(next_url, allow_redirects=False) as response:
            if hdrs.LOCATION in response.headers:
                location = response.headers[hdrs.LOCATION]
                if "cmd=sendfile" not in location:
                    return None
                next_url = str(response.url.join(URL(location)))
            elif response.status == 200:
                return await self._stream_to_disk(node, response, bar)
            else:
                raise DownloadError(f"Server responded with status {response.status} for {next_url}")

        async with self._session.get(next_url) as response:
            if response.status != 200:
                raise DownloadError(f"Server responded with status {response.status} for {next_url}")
            return await self._stream_to_disk(node, response, bar)

    async def _stream_to_disk(self, node: FileNode, response: aiohttp.ClientResponse, bar: ProgressBar) -> int:
        # aiohttp decompresses transparently, so the length header only
        # matches what we write for unencoded bodies
        encoding = response.headers.get(hdrs.CONTENT_ENCODING, "identity").strip().lower()
        expected = response.content_length if encoding == "identity" else None

        # https://developer.mozilla.org/en-US/docs/Web/HTTP/Headers/Content-Range
        if content_range := response.headers.get(hdrs.CONTENT_RANGE, None):
            parts = content_range.split("/")
            if len(parts) == 2 and parts[1].isdigit():
                bar.set_total(int(parts[1]))

        # Prefer the content length header
        if expected:
            bar.set_total(expected)

        tmp_path, file = self._output_dir.create_tmp_file(node.path)
        try:
            written = 0
            with file:
                async for data in response.content.iter_chunked(1024 * 64):
                    file.write(data)
                    written += len(data)
                    bar.advance(len(data))

            if expected is not None and written != expected:
                raise aiohttp.ClientPayloadError(f"Expected {expected} bytes but got {written}")

            self._output_dir.promote(tmp_path, node.path, node.modified_hint)
            return written
        finally:
            # A no-op once the file was promoted
            tmp_path.unlink(missing_ok=True)
