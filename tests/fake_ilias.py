"""A tiny ILIAS stand-in serving folder listings, files and the login form."""
import asyncio
import gzip
import html
import json
from configparser import ConfigParser
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Set

from aiohttp import hdrs, web
from aiohttp.test_utils import TestServer

from ilias_mirror.auth import SimpleAuthenticator
from ilias_mirror.auth.simple import SimpleAuthSection
from ilias_mirror.limiter import RateGate
from ilias_mirror.login import LocalLogin
from ilias_mirror.session import SessionManager

USERNAME = "student"
PASSWORD = "hunter2"
CLIENT_ID = "testclient"

# Folder kinds as they appear in permalinks
CONTAINER_KINDS = {"crs", "fold", "grp", "cat", "sess"}
# Kinds that are saved as files: plain files, Opencast recordings and forum threads
FILE_KINDS = {"file", "video", "thread"}


@dataclass
class FakeObject:
    ref_id: str
    kind: str
    name: str
    content: bytes = b""
    extension: str = "txt"
    version: str = "1"
    date: str = "01. Jan 2024, 10:00"
    children: List[str] = field(default_factory=list)


def listing_item(obj: FakeObject) -> str:
    if obj.kind == "file":
        href = f"/goto.php/file/{obj.ref_id}/download"
        properties = (
            f'<span class="il_ItemProperty">{obj.extension}</span>'
            f'<span class="il_ItemProperty">{len(obj.content)} Bytes</span>'
            f'<span class="il_ItemProperty">Version: {obj.version}</span>'
            f'<span class="il_ItemProperty">{obj.date}</span>'
        )
    else:
        href = f"/goto.php/{obj.kind}/{obj.ref_id}"
        properties = ""

    return f"""
    <div class="il_ContainerListItem">
      <a class="il_ContainerItemTitle" href="{href}">{html.escape(obj.name)}</a>
      <div class="il_ItemProperties">{properties}</div>
    </div>
    """


def video_table(series: FakeObject, videos: List[FakeObject]) -> str:
    rows = "".join(
        f"""
        <tr>
          <td class="std"><img src="/thumbnail/{video.ref_id}.jpg"></td>
          <td class="std">{index}</td>
          <td class="std">{html.escape(video.name)}</td>
          <td class="std">{video.date}</td>
          <td class="std"><a href="/player?event_id={video.ref_id}" target="_blank">Abspielen</a></td>
        </tr>
        """
        for index, video in enumerate(videos, start=1)
    )
    return f'<table id="tbl_xoct_{series.ref_id}">{rows}</table>'


def thread_table(forum: FakeObject, threads: List[FakeObject]) -> str:
    rows = "".join(
        f"""
        <tr>
          <td><a href="/ilias.php?ref_id={forum.ref_id}&thr_pk={thread.ref_id}&cmd=viewThread">{html.escape(thread.name)}</a></td>
          <td>{USERNAME}</td>
          <td>{thread.version}</td>
        </tr>
        """
        for thread in threads
    )
    return f"<table>{rows}</table>"


def page(body: str, logged_in: bool = True) -> str:
    if logged_in:
        metabar = '<div class="il-maincontrols-metabar"><a href="/ilias.php?baseClass=ilDashboardGUI">Home</a></div>'
    else:
        metabar = '<div class="il-maincontrols-metabar"><a href="/login.php?cmd=force_login">Log in</a></div>'
    return f"<html><head><title>ILIAS</title></head><body>{metabar}{body}</body></html>"


class FakeIlias:
    def __init__(self) -> None:
        self.objects: Dict[str, FakeObject] = {}
        self.logged_in = False
        self.login_count = 0
        self.listing_requests: Dict[str, int] = {}
        self.download_requests: Dict[str, int] = {}
        # ref id -> number of 500 answers still to give, -1 for always
        self.fail_listing: Dict[str, int] = {}
        self.fail_download: Dict[str, int] = {}
        # ref id -> pages that show an ILIAS error box
        self.error_pages: Dict[str, str] = {}
        # ref ids served gzip-compressed
        self.gzip_download: Set[str] = set()
        # ref ids whose download stops halfway until release_stalled is set
        self.stall_download: Set[str] = set()
        self.stalled = asyncio.Event()
        self.release_stalled = asyncio.Event()

        self.add(FakeObject("1", "crs", "Course"))

    @property
    def root(self) -> FakeObject:
        return self.objects["1"]

    def add(self, obj: FakeObject, parent: Optional[str] = None) -> FakeObject:
        self.objects[obj.ref_id] = obj
        if parent is not None:
            self.objects[parent].children.append(obj.ref_id)
        return obj

    def folder(self, ref_id: str, name: str, parent: str = "1", kind: str = "fold") -> FakeObject:
        return self.add(FakeObject(ref_id, kind, name), parent)

    def file(self, ref_id: str, name: str, content: bytes, parent: str = "1", **kwargs: str) -> FakeObject:
        return self.add(FakeObject(ref_id, "file", name, content, **kwargs), parent)

    def video(self, ref_id: str, title: str, content: bytes, parent: str, date: str = "01.02.2024 10:00") -> FakeObject:
        return self.add(FakeObject(ref_id, "video", title, content, date=date), parent)

    def thread(self, ref_id: str, title: str, posts: int, parent: str) -> FakeObject:
        content = f"<html><body><h1>{html.escape(title)}</h1><p>{posts} posts</p></body></html>".encode()
        return self.add(FakeObject(ref_id, "thread", title, content, version=str(posts)), parent)

    def link(self, ref_id: str, parent: str) -> None:
        self.objects[parent].children.append(ref_id)

    def unlink(self, ref_id: str, parent: str) -> None:
        self.objects[parent].children.remove(ref_id)

    def expire_session(self) -> None:
        self.logged_in = False

    def root_url(self, base_url: str) -> str:
        return f"{base_url}/goto.php/crs/1"

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/login.php", self._login_page)
        app.router.add_post("/ilias.php", self._login_post)
        app.router.add_get("/ilias.php", self._ilias_php)
        app.router.add_get("/player", self._player)
        app.router.add_get("/stream/{ref_id}", self._stream)
        app.router.add_get("/goto.php/file/{ref_id}/download", self._download)
        app.router.add_get("/goto.php/{kind}/{ref_id}", self._container)
        return app

    def _redirect_to_login(self) -> None:
        raise web.HTTPFound("/login.php?cmd=force_login")

    async def _login_page(self, request: web.Request) -> web.Response:
        if request.query.get("client_id", CLIENT_ID) != CLIENT_ID:
            return web.Response(text=page("<p>Unknown client</p>", logged_in=False), content_type="text/html")

        form = """
        <form name="login_form" method="post" action="ilias.php?cmd=post_login">
          <input name="login_form/input_3/input_4">
          <input name="login_form/input_3/input_5" type="password">
        </form>
        """
        return web.Response(text=page(form, logged_in=False), content_type="text/html")

    async def _login_post(self, request: web.Request) -> web.Response:
        data = await request.post()
        if data.get("login_form/input_3/input_4") == USERNAME and data.get("login_form/input_3/input_5") == PASSWORD:
            self.logged_in = True
            self.login_count += 1
            return web.Response(text=page("<p>Welcome</p>"), content_type="text/html")
        return web.Response(text=page("<p>Wrong password</p>", logged_in=False), content_type="text/html")

    async def _ilias_php(self, request: web.Request) -> web.StreamResponse:
        query = request.query
        if "thr_pk" in query:
            return await self._serve_file(request, query["thr_pk"])

        if not self.logged_in:
            self._redirect_to_login()

        if query.get("cmd") == "asyncGetTableGUI":
            series = self.objects[query["ref_id"]]
            self.listing_requests[series.ref_id] = self.listing_requests.get(series.ref_id, 0) + 1
            # Only the table, without the surrounding page
            videos = [self.objects[child] for child in series.children]
            return web.Response(text=video_table(series, videos), content_type="text/html")

        return web.Response(text=page("<p>Dashboard</p>"), content_type="text/html")

    async def _container(self, request: web.Request) -> web.Response:
        ref_id = request.match_info["ref_id"]
        self.listing_requests[ref_id] = self.listing_requests.get(ref_id, 0) + 1

        if not self.logged_in:
            self._redirect_to_login()

        remaining = self.fail_listing.get(ref_id, 0)
        if remaining != 0:
            self.fail_listing[ref_id] = remaining - 1 if remaining > 0 else -1
            return web.Response(status=500, text="Internal Server Error")

        if ref_id in self.error_pages:
            body = f'<div class="alert alert-danger">{html.escape(self.error_pages[ref_id])}</div>'
            return web.Response(text=page(body), content_type="text/html")

        obj = self.objects.get(ref_id)
        if obj is None:
            raise web.HTTPNotFound()
        children = [self.objects[child] for child in obj.children]

        if obj.kind == "xoct":
            href = f"/ilias.php?ref_id={ref_id}&cmdClass=xocteventgui&cmd=showContent&baseClass=ilObjPluginDispatchGUI"
            body = f'<div id="tab_series"><a href="{html.escape(href)}">Videos</a></div>'
        elif obj.kind == "frm":
            body = thread_table(obj, children)
            if "trows" not in request.query:
                body += f'<a href="/goto.php/frm/{ref_id}?trows=800">Show all threads</a>'
        elif obj.kind in CONTAINER_KINDS:
            body = "".join(listing_item(child) for child in children)
        else:
            raise web.HTTPNotFound()

        return web.Response(text=page(body), content_type="text/html")

    async def _player(self, request: web.Request) -> web.Response:
        if not self.logged_in:
            self._redirect_to_login()

        event_id = request.query["event_id"]
        src = f"{request.scheme}://{request.host}/stream/{event_id}"
        streams = json.dumps({"streams": [{"sources": {"mp4": [{"src": src}]}}]})
        script = f'<script>il.Opencast.player.init({streams}, {{"paella_config_file": "/config.json"}});</script>'
        return web.Response(text=f'<html><body><div id="playerContainer"></div>{script}</body></html>',
                            content_type="text/html")

    async def _download(self, request: web.Request) -> web.StreamResponse:
        return await self._serve_file(request, request.match_info["ref_id"])

    async def _stream(self, request: web.Request) -> web.StreamResponse:
        # Opencast streams don't check the ILIAS session
        return await self._serve_file(request, request.match_info["ref_id"], require_login=False)

    async def _serve_file(self, request: web.Request, ref_id: str, require_login: bool = True) -> web.StreamResponse:
        self.download_requests[ref_id] = self.download_requests.get(ref_id, 0) + 1

        if require_login and not self.logged_in:
            self._redirect_to_login()

        remaining = self.fail_download.get(ref_id, 0)
        if remaining != 0:
            self.fail_download[ref_id] = remaining - 1 if remaining > 0 else -1
            return web.Response(status=500, text="Internal Server Error")

        obj = self.objects.get(ref_id)
        if obj is None or obj.kind not in FILE_KINDS:
            raise web.HTTPNotFound()

        if ref_id in self.gzip_download:
            return web.Response(
                body=gzip.compress(obj.content),
                headers={hdrs.CONTENT_ENCODING: "gzip"},
                content_type="application/octet-stream",
            )

        if ref_id in self.stall_download:
            response = web.StreamResponse(headers={hdrs.CONTENT_TYPE: "application/octet-stream"})
            response.content_length = len(obj.content)
            await response.prepare(request)
            half = len(obj.content) // 2
            await response.write(obj.content[:half])
            self.stalled.set()
            await self.release_stalled.wait()
            try:
                await response.write(obj.content[half:])
                await response.write_eof()
            except ConnectionResetError:
                pass  # The client gave up on us
            return response

        return web.Response(body=obj.content, content_type="application/octet-stream")


@asynccontextmanager
async def serve(fake: FakeIlias) -> AsyncIterator[str]:
    """
    Run the fake on a random local port and yield its base URL.
    """

    server = TestServer(fake.app())
    await server.start_server()
    try:
        yield f"http://{server.host}:{server.port}"
    finally:
        await server.close()


async def no_sleep(delay: float) -> None:
    pass


def authenticator(username: str = USERNAME, password: str = PASSWORD) -> SimpleAuthenticator:
    parser = ConfigParser(interpolation=None)
    parser["auth:test"] = {"type": "simple", "username": username, "password": password}
    return SimpleAuthenticator("auth:test", SimpleAuthSection(parser["auth:test"]))


def session_manager(
        base_url: str,
        cookie_path: Optional[Path] = None,
        username: str = USERNAME,
        password: str = PASSWORD,
) -> SessionManager:
    login = LocalLogin(base_url, authenticator(username, password), CLIENT_ID)
    # Fast enough not to slow down the tests
    gate = RateGate(1000, period=1.0, burst=1000)
    return SessionManager(base_url, login, gate, cookie_path=cookie_path, sleep=no_sleep)
