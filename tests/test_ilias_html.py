from datetime import datetime

import pytest

from ilias_mirror.crawl.ilias_html import (IliasElementType, IliasPage, demangle_date, find_date_in_text,
                                           find_size_in_text, parse_ilias_url, sanitize_path_name)
from ilias_mirror.utils import soupify

PAGE_URL = "https://ilias.example.com/goto.php/crs/1"

LISTING = """
<html><body>
<div class="il-maincontrols-metabar"><a href="/ilias.php?baseClass=ilDashboardGUI">Home</a></div>
<div>
  <img class="ilListItemIcon" src="/templates/default/images/icon_fold.svg">
  <div class="il_ContainerListItem">
    <a class="il_ContainerItemTitle" href="/goto.php/fold/2">Slides</a>
  </div>
</div>
<div>
  <div class="il_ContainerListItem">
    <a class="il_ContainerItemTitle" href="/goto.php/file/10/download">Sheet 01</a>
    <div class="il_ItemProperties">
      <span class="il_ItemProperty">pdf</span>
      <span class="il_ItemProperty">1,5 MB</span>
      <span class="il_ItemProperty">Version: 3</span>
      <span class="il_ItemProperty">24. Mär 2023, 14:30</span>
    </div>
  </div>
</div>
<div>
  <div class="il_ContainerListItem">
    <a class="il_ContainerItemTitle" href="/goto.php/frm/20">Forum</a>
  </div>
</div>
<div>
  <div class="il_ContainerListItem">
    <a class="il_ContainerItemTitle">Offline folder</a>
  </div>
</div>
<div>
  <img class="ilListItemIcon" src="/templates/default/images/icon_grp.svg">
  <div class="il_ContainerListItem">
    <a class="il_ContainerItemTitle" href="/ilias.php?ref_id=30&amp;cmdClass=ilrepositorygui">Tutorial   Group</a>
  </div>
</div>
<div class="il-item-title"><a href="/goto.php/fold/2">Slides</a></div>
</body></html>
"""


def listing_page(body: str = LISTING) -> IliasPage:
    return IliasPage(soupify(body.encode()), PAGE_URL)


@pytest.mark.parametrize("url, kind, ref_id", [
    ("https://ilias.example.com/goto.php/crs/123", IliasElementType.COURSE, "123"),
    ("https://ilias.example.com/goto.php/file/55/download", IliasElementType.FILE, "55"),
    ("https://ilias.example.com/goto.php?target=fold_77&client_id=x", IliasElementType.FOLDER, "77"),
    ("https://ilias.example.com/goto.php?target=file_88_download", IliasElementType.FILE, "88"),
    ("https://ilias.example.com/goto_produktiv_grp_99.html", IliasElementType.GROUP, "99"),
    ("https://ilias.example.com/ilias.php?ref_id=5&cmd=showThreads", IliasElementType.FORUM, "5"),
    ("https://ilias.example.com/ilias.php?ref_id=6&cmd=sendfile", IliasElementType.FILE, "6"),
    ("https://ilias.example.com/ilias.php?ref_id=7&baseClass=ilExerciseHandlerGUI", IliasElementType.EXERCISE, "7"),
    ("https://ilias.example.com/ilias.php?ref_id=8", None, "8"),
    ("https://ilias.example.com/goto.php/xoct/12", IliasElementType.VIDEO_SERIES, "12"),
    ("https://ilias.example.com/ilias.php?ref_id=13&baseClass=ilObjPluginDispatchGUI", IliasElementType.VIDEO_SERIES, "13"),
    ("https://ilias.example.com/ilias.php?ref_id=5&thr_pk=44&cmd=viewThread", IliasElementType.FORUM_THREAD, "5"),
])
def test_parse_ilias_url(url, kind, ref_id):
    info = parse_ilias_url(url)

    assert info.type == kind
    assert info.ref_id == ref_id


def test_children_of_a_listing():
    elements = listing_page().get_child_elements()

    assert [(e.type, e.name, e.remote_id) for e in elements] == [
        (IliasElementType.FOLDER, "Slides", "2"),
        (IliasElementType.FILE, "Sheet 01.pdf", "10"),
        (IliasElementType.FORUM, "Forum", "20"),
        (IliasElementType.GROUP, "Tutorial Group", "30"),
    ]


def test_file_properties():
    sheet = listing_page().get_child_elements()[1]

    assert sheet.url == "https://ilias.example.com/goto.php/file/10/download"
    assert sheet.size == 1572864
    assert sheet.version == "3"
    assert sheet.mtime == datetime(2023, 3, 24, 14, 30)


def test_file_without_properties_keeps_its_name():
    body = """
    <div class="il_ContainerListItem">
      <a class="il_ContainerItemTitle" href="/goto.php/file/10/download">notes.txt</a>
    </div>
    """
    (element,) = listing_page(body).get_child_elements()

    assert element.name == "notes.txt"
    assert element.size is None
    assert element.mtime is None


def test_login_detection():
    logged_in = listing_page()
    logged_out = listing_page(
        '<div class="il-maincontrols-metabar"><a href="/login.php?cmd=force_login">Log in</a></div>'
    )

    assert logged_in.is_logged_in()
    assert not logged_out.is_logged_in()
    assert not listing_page("<p>Nothing here</p>").is_logged_in()


def test_error_message():
    page = listing_page('<div class="alert alert-danger"> No permission to read </div>')

    assert page.get_error_message() == "No permission to read"
    assert listing_page().get_error_message() is None


def test_permalink_and_root_page():
    body = '<input id="current_perma_link" value="https://ilias.example.com/goto.php/root/1">'

    assert listing_page(body).get_permalink() == "https://ilias.example.com/goto.php/root/1"
    assert listing_page(body).is_root_page()
    assert not listing_page().is_root_page()


@pytest.mark.parametrize("text, size", [
    ("512 Bytes", 512),
    ("0 Bytes", 0),
    ("3 KB", 3072),
    ("1,5 MB", 1572864),
    ("2.0 GB", 2 * 1024 ** 3),
    ("no size here", None),
])
def test_find_size_in_text(text, size):
    assert find_size_in_text(text) == size


def test_find_date_in_text():
    assert find_date_in_text("Version: 2 03. Okt 2022, 08:15") == datetime(2022, 10, 3, 8, 15)
    assert find_date_in_text("Version: 2") is None


def test_demangle_date():
    assert demangle_date("20. Apr. 2020, 12:00") == datetime(2020, 4, 20, 12, 0)
    assert demangle_date("1. May 2021") == datetime(2021, 5, 1)
    assert demangle_date("garbage", fail_silently=True) is None


def test_demangle_relative_date():
    today = datetime.now()
    parsed = demangle_date("Heute, 09:45")

    assert parsed is not None
    assert (parsed.hour, parsed.minute) == (9, 45)
    assert abs((parsed.date() - today.date()).days) <= 1


@pytest.mark.parametrize("name, expected", [
    ("Sheet 01", "Sheet 01"),
    ("  Lecture\n  Notes ", "Lecture Notes"),
    ("A/B", "A-B"),
    ("..", "_.."),
    ("", "_"),
])
def test_sanitize_path_name(name, expected):
    assert sanitize_path_name(name) == expected


SERIES_PAGE = """
<html><body>
<div class="il-maincontrols-metabar"><a href="/ilias.php?baseClass=ilDashboardGUI">Home</a></div>
<div id="tab_series"><a href="/ilias.php?ref_id=12&amp;cmd=showContent&amp;cmdClass=xocteventgui">Videos</a></div>
</body></html>
"""

VIDEO_TABLE = """
<table id="tbl_xoct_12">
  <tr>
    <td class="std"><img src="/thumb.jpg"></td>
    <td class="std">1</td>
    <td class="std">Lecture  01: Intro</td>
    <td class="std">Max Mustermann</td>
    <td class="std">17.10.2023 14:00</td>
    <td class="std"><a href="/ilias.php?ref_id=12&amp;cmd=streamVideo&amp;event_id=abc-1" target="_blank">Abspielen</a></td>
  </tr>
  <tr>
    <td class="std"></td>
    <td class="std">2</td>
    <td class="std">Lecture 02</td>
    <td class="std"></td>
    <td class="std">no date</td>
    <td class="std"><a href="/ilias.php?ref_id=12&amp;cmd=streamVideo&amp;event_id=abc-2"> Play </a></td>
  </tr>
</table>
"""


def test_video_series_page_points_to_its_table():
    page = IliasPage(soupify(SERIES_PAGE.encode()), "https://ilias.example.com/goto.php/xoct/12")

    url = page.get_full_listing_url()

    assert url is not None
    assert "cmd=asyncGetTableGUI" in url
    assert "limit=800" in url
    assert "cmdClass=xocteventgui" in url
    assert page.get_child_elements() == []


def test_videos_in_a_series_table():
    page = IliasPage(soupify(VIDEO_TABLE.encode()), "https://ilias.example.com/ilias.php?ref_id=12")

    assert page.is_logged_in()
    assert page.get_full_listing_url() is None
    first, second = page.get_child_elements()

    assert first.type == IliasElementType.VIDEO
    assert first.name == "Lecture 01: Intro.mp4"
    assert first.remote_id == "xoct_abc-1"
    assert first.mtime == datetime(2023, 10, 17, 14, 0)
    assert first.url == "https://ilias.example.com/ilias.php?ref_id=12&cmd=streamVideo&event_id=abc-1"
    assert second.name == "Lecture 02.mp4"
    assert second.mtime is None


def test_stream_url_on_the_player_page():
    html = """
    <html><body><div id="playerContainer"></div>
    <script>
      il.Opencast.init({"streams":[{"sources":{"mp4":[{"src":"https://oc.example.com/a.mp4"}]}}]},
        {"paella_config_file": "/config.json"});
    </script>
    </body></html>
    """
    page = IliasPage(soupify(html.encode()), "https://ilias.example.com/player")

    assert page.is_logged_in()
    assert page.get_video_stream_url() == "https://oc.example.com/a.mp4"
    assert listing_page().get_video_stream_url() is None


FORUM_PAGE = """
<html><body>
<div class="il-maincontrols-metabar"><a href="/ilias.php?baseClass=ilDashboardGUI">Home</a></div>
<table>
  <tr>
    <td><a href="/ilias.php?ref_id=20&amp;thr_pk=7&amp;cmd=viewThread">Exam / dates</a></td>
    <td>student</td>
    <td>4</td>
  </tr>
  <tr>
    <td><a href="/ilias.php?ref_id=20&amp;thr_pk=8&amp;cmd=viewThread">Sheet 2</a>
        <a href="/ilias.php?ref_id=20&amp;thr_pk=8&amp;cmd=viewThread&amp;page=2">2</a></td>
    <td>tutor</td>
    <td>11</td>
  </tr>
</table>
<a href="/ilias.php?ref_id=20&amp;cmd=showThreads&amp;trows=800">All</a>
</body></html>
"""


def test_forum_threads():
    page = IliasPage(soupify(FORUM_PAGE.encode()), "https://ilias.example.com/ilias.php?ref_id=20&cmd=showThreads")

    assert page.get_full_listing_url() == "https://ilias.example.com/ilias.php?ref_id=20&cmd=showThreads&trows=800"
    assert [(e.type, e.name, e.remote_id, e.version) for e in page.get_child_elements()] == [
        (IliasElementType.FORUM_THREAD, "7_Exam - dates.html", "thr_7", "4"),
        (IliasElementType.FORUM_THREAD, "8_Sheet 2.html", "thr_8", "11"),
    ]
