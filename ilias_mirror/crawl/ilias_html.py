import json
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Set, cast
from urllib.parse import parse_qs, urljoin, urlsplit

from bs4 import BeautifulSoup, Tag
from yarl import URL

from ..logging import log


class IliasElementType(Enum):
    BLOG = "blog"
    BOOKING = "booking"
    CATEGORY = "category"
    CONTENT_PAGE = "content_page"
    COURSE = "course"
    EXERCISE = "exercise"
    FILE = "file"
    FOLDER = "folder"
    FORUM = "forum"
    FORUM_THREAD = "forum_thread"
    GROUP = "group"
    LEARNING_MODULE = "learning_module"
    LINK = "link"
    MEDIACAST = "mediacast"
    MEETING = "meeting"
    SURVEY = "survey"
    TEST = "test"
    # One Opencast recording, listed on a video series page
    VIDEO = "video"
    VIDEO_SERIES = "video_series"
    WIKI = "wiki"


# Elements the crawler descends into
FOLDER_TYPES: Set[IliasElementType] = {
    IliasElementType.CATEGORY,
    IliasElementType.COURSE,
    IliasElementType.FOLDER,
    IliasElementType.GROUP,
    IliasElementType.MEETING,
}

# The short object type names ILIAS uses in permalinks and icon file names
_TYPE_TOKENS: Dict[str, IliasElementType] = {
    "blog": IliasElementType.BLOG,
    "book": IliasElementType.BOOKING,
    "cat": IliasElementType.CATEGORY,
    "copa": IliasElementType.CONTENT_PAGE,
    "crs": IliasElementType.COURSE,
    "exc": IliasElementType.EXERCISE,
    "file": IliasElementType.FILE,
    "fold": IliasElementType.FOLDER,
    "frm": IliasElementType.FORUM,
    "grp": IliasElementType.GROUP,
    "htlm": IliasElementType.LEARNING_MODULE,
    "lm": IliasElementType.LEARNING_MODULE,
    "mcst": IliasElementType.MEDIACAST,
    "sahs": IliasElementType.LEARNING_MODULE,
    "sess": IliasElementType.MEETING,
    "svy": IliasElementType.SURVEY,
    "tst": IliasElementType.TEST,
    "webr": IliasElementType.LINK,
    "wiki": IliasElementType.WIKI,
    "xoct": IliasElementType.VIDEO_SERIES,
}

_BASE_CLASS_TYPES: Dict[str, IliasElementType] = {
    "ilexercisehandlergui": IliasElementType.EXERCISE,
    "ilwikihandlergui": IliasElementType.WIKI,
    "ilobjplugindispatchgui": IliasElementType.VIDEO_SERIES,
    "illinkresourcehandlergui": IliasElementType.LINK,
}


@dataclass
class IliasPageElement:
    type: IliasElementType
    url: str
    name: str
    remote_id: str
    mtime: Optional[datetime] = None
    size: Optional[int] = None
    version: Optional[str] = None


@dataclass
class UrlInfo:
    type: Optional[IliasElementType]
    ref_id: Optional[str]


def parse_ilias_url(url: str) -> UrlInfo:
    """
    Find out what an ILIAS link points to, as far as the URL alone tells.

    Understands the permalink forms "goto.php/<type>/<id>",
    "goto.php?target=<type>_<id>", "goto_<client>_<type>_<id>.html" as well as
    plain "ilias.php?baseClass=...&ref_id=..." links.
    """

    parts = urlsplit(url)
    query = {key: values[0] for key, values in parse_qs(parts.query).items()}

    if match := re.search(r"goto\.php/([a-z]+)/(\d+)", parts.path):
        return UrlInfo(_TYPE_TOKENS.get(match.group(1)), match.group(2))

    target = query.get("target")
    if target is None:
        if match := re.search(r"goto_[^_/]+_(.+)\.html$", parts.path):
            target = match.group(1)
    if target is not None:
        if match := re.fullmatch(r"([a-z]+)_(\d+)(_.*)?", target):
            return UrlInfo(_TYPE_TOKENS.get(match.group(1)), match.group(2))

    ref_id = query.get("ref_id")
    if query.get("thr_pk") is not None:
        return UrlInfo(IliasElementType.FORUM_THREAD, ref_id)
    if query.get("cmd", "").lower() == "showthreads":
        return UrlInfo(IliasElementType.FORUM, ref_id)
    if query.get("cmd", "").lower() == "sendfile":
        return UrlInfo(IliasElementType.FILE, ref_id)

    base_class = query.get("baseClass", "").lower()
    return UrlInfo(_BASE_CLASS_TYPES.get(base_class), ref_id)


class IliasPage:
    def __init__(self, soup: BeautifulSoup, page_url: str):
        self._soup = soup
        self._page_url = page_url

    @property
    def url(self) -> str:
        return self._page_url

    def is_logged_in(self) -> bool:
        soup = self._soup

        # Normal ILIAS pages
        mainbar = cast(Optional[Tag], soup.find(class_="il-maincontrols-metabar"))
        if mainbar is not None:
            login_button = mainbar.find(attrs={"href": lambda x: x is not None and "login.php" in x})
            shib_login = soup.find(id="button_shib_login")
            return not login_button and not shib_login

        # Personal desktop
        if soup.find("a", attrs={"href": lambda x: x is not None and "block_type=pditems" in x}):
            return True

        # An empty personal desktop has no markers at all, so match on the text
        if alert := soup.select_one(".alert-info"):
            text = alert.get_text().lower()
            if "you have not yet selected any favourites" in text:
                return True
            if "sie haben aktuell noch keine favoriten ausgewählt" in text:
                return True

        # Video tables are fetched as bare fragments and the player page has
        # no ILIAS frame either
        if self._video_table() is not None:
            return True
        if soup.select_one("#playerContainer") is not None:
            return True

        return False

    def is_root_page(self) -> bool:
        if permalink := self.get_permalink():
            return "goto.php/root/" in permalink or "target=root_" in permalink
        return False

    def get_error_message(self) -> Optional[str]:
        """
        The message of an ILIAS error box, if the page has one.
        """

        if alert := self._soup.select_one("div.alert-danger"):
            return alert.get_text().strip() or "ILIAS reported an error"
        return None

    def get_permalink(self) -> Optional[str]:
        pattern = re.compile(r"il\.Footer\.permalink\.copyText\(\"(.+?)\"\)")
        for script in cast(List[Tag], self._soup.find_all("script")):
            if match := pattern.search(script.text):
                return match.group(1).replace(r"\/", "/")

        if link := self._soup.select_one("#current_perma_link"):
            return cast(Optional[str], link.get("value"))
        return None

    def get_child_elements(self) -> List[IliasPageElement]:
        """
        Return all elements listed on this page.
        """

        if self._video_table() is not None:
            return self._find_videos()
        if self._is_forum():
            return self._find_forum_threads()

        result: List[IliasPageElement] = []
        seen_urls: Set[str] = set()

        links: List[Tag] = []
        links.extend(self._soup.select("a.il_ContainerItemTitle"))
        links.extend(self._soup.select(".il-item-title > a"))

        for link in links:
            href = cast(Optional[str], link.get("href"))
            if not href:
                # Offline or disabled objects have no link
                continue

            url = self._abs_url(href)
            if url in seen_urls:
                continue
            seen_urls.add(url)

            name = sanitize_path_name(link.get_text())
            element_type = self._find_type(url, link)
            if element_type is None:
                log.explain(f"Could not find type of {name!r} at {url}, ignoring it")
                continue

            info = parse_ilias_url(url)
            remote_id = info.ref_id if info.ref_id is not None else url

            if element_type == IliasElementType.FILE:
                result.append(self._file_to_element(name, url, remote_id, link))
            else:
                log.explain(f"Found {name!r} of type {element_type.value}")
                result.append(IliasPageElement(element_type, url, name, remote_id))

        return result

    def get_full_listing_url(self) -> Optional[str]:
        """
        Where to find everything this page lists, if the page itself shows
        only a part of it. Video series pages load their table separately,
        forums show a limited number of threads per page.
        """

        if self._video_table() is None:
            if link := self._soup.select_one("#tab_series a"):
                url = URL(self._abs_url(cast(str, link.get("href", ""))))
                return str(url.update_query(limit="800", cmd="asyncGetTableGUI", cmdMode="asynch"))

        if self._is_forum() and "trows=800" not in self._page_url:
            link = self._soup.find("a", attrs={"href": lambda x: x is not None and "trows=800" in x})
            if link is not None:
                return self._abs_url(cast(str, cast(Tag, link).get("href")))

        return None

    def get_video_stream_url(self) -> Optional[str]:
        """
        The mp4 stream of an Opencast player page. The player gets it from a
        JSON object in a script tag.
        """

        match = re.search(r"(\{\"streams\"[\s\S]+?),\s*\{\"paella_config_file", str(self._soup))
        if match is None:
            return None

        try:
            streams = json.loads(match.group(1))["streams"]
            return cast(str, streams[0]["sources"]["mp4"][0]["src"])
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            log.explain(f"Malformed stream info on {self._page_url}: {e}")
            return None

    def _video_table(self) -> Optional[Tag]:
        return cast(Optional[Tag], self._soup.find(
            "table",
            attrs={"id": lambda x: x is not None and x.startswith("tbl_xoct")},
        ))

    def _is_forum(self) -> bool:
        return self._soup.select_one('table a[href*="thr_pk="]') is not None

    def _find_videos(self) -> List[IliasPageElement]:
        result: List[IliasPageElement] = []

        # Every recording has a "play" link in its table row
        for link in cast(List[Tag], self._soup.find_all("a", string=re.compile(r"^\s*(Abspielen|Play)\s*$"))):
            row = link.find_parent("tr")
            if row is None:
                continue
            cells = [cell.get_text().strip() for cell in row.find_all("td")]
            if len(cells) < 3 or not cells[2]:
                log.explain(f"Video row without a title: {cells!r}")
                continue

            url = self._abs_url(cast(str, link.get("href", "")))
            event_id = parse_qs(urlsplit(url).query).get("event_id")
            remote_id = f"xoct_{event_id[0]}" if event_id else url

            mtime = None
            for cell in reversed(cells):
                if match := re.search(r"\d+\.\d+\.\d+ \d+:\d+", cell):
                    mtime = datetime.strptime(match.group(0), "%d.%m.%Y %H:%M")
                    break

            name = sanitize_path_name(cells[2]) + ".mp4"
            log.explain(f"Found video {name!r} at {url}")
            result.append(IliasPageElement(IliasElementType.VIDEO, url, name, remote_id, mtime))

        return result

    def _find_forum_threads(self) -> List[IliasPageElement]:
        result: List[IliasPageElement] = []
        seen: Set[str] = set()

        for link in cast(List[Tag], self._soup.select('table a[href*="thr_pk="]')):
            url = self._abs_url(cast(str, link.get("href", "")))
            thr_pk = parse_qs(urlsplit(url).query)["thr_pk"][0]
            if thr_pk in seen:
                continue
            seen.add(thr_pk)

            # The post count is the only purely numeric column
            posts = None
            if row := link.find_parent("tr"):
                texts = [cell.get_text().strip() for cell in row.find_all("td")]
                posts = next((text for text in texts if text.isdigit()), None)

            name = f"{thr_pk}_{sanitize_path_name(link.get_text())}.html"
            log.explain(f"Found thread {name!r} with {posts} posts")
            result.append(IliasPageElement(IliasElementType.FORUM_THREAD, url, name, f"thr_{thr_pk}", version=posts))

        return result

    def _find_type(self, url: str, link: Tag) -> Optional[IliasElementType]:
        info = parse_ilias_url(url)
        if info.type is not None:
            return info.type

        # Fall back to the object icon, e. g. "icon_fold.svg"
        if icon := self._find_icon(link):
            for attr in ("src", "alt"):
                value = cast(str, icon.get(attr, "") or "")
                if match := re.search(r"icon_([a-z]+)\.(?:svg|png|gif)", value):
                    if found := _TYPE_TOKENS.get(match.group(1)):
                        return found

        # Repository links without a command are containers
        if "ref_id=" in url and "cmd=" not in url:
            return IliasElementType.FOLDER

        return None

    @staticmethod
    def _find_icon(link: Tag) -> Optional[Tag]:
        item = link.find_parent("div", class_="il_ContainerListItem")
        if item is None:
            item = link.find_parent(class_="il-std-item")
        if item is None:
            return None

        # The icon sits next to the item, not inside it
        container = item.parent if item.parent is not None else item
        return cast(Optional[Tag], container.find("img", class_="ilListItemIcon") or container.find("img"))

    def _file_to_element(self, name: str, url: str, remote_id: str, link: Tag) -> IliasPageElement:
        # Files have a list of properties (type, size, version, date) in
        # il_ItemProperty spans. The first is always the extension, the order
        # of the others depends on the ILIAS version.
        item = link.find_parent("div", class_="il_ContainerListItem")
        properties = item.select("span.il_ItemProperty") if item is not None else []

        if not properties:
            log.explain(f"File {name!r} has no properties, keeping its name as is")
            return IliasPageElement(IliasElementType.FILE, url, name, remote_id)

        extension = properties[0].get_text().strip()
        texts = [prop.get_text().strip() for prop in properties[1:]]
        all_text = " ".join(texts)

        size = find_size_in_text(all_text)
        mtime = find_date_in_text(all_text)
        version = None
        for text in texts:
            if match := re.match(r"Version:\s*(\S+)", text):
                version = match.group(1)

        full_name = f"{name}.{extension}" if extension and not name.endswith(f".{extension}") else name
        log.explain(f"Found file {full_name!r} (size {size}, modified {mtime}, version {version})")
        return IliasPageElement(IliasElementType.FILE, url, full_name, remote_id, mtime, size, version)

    def _abs_url(self, relative_url: str) -> str:
        return urljoin(self._page_url, relative_url)


_SIZE_UNITS = {
    "bytes": 1,
    "byte": 1,
    "b": 1,
    "kb": 1024,
    "mb": 1024 ** 2,
    "gb": 1024 ** 3,
}


def find_size_in_text(text: str) -> Optional[int]:
    """
    Parse sizes like "512 Bytes", "1,5 MB" or "3.2 KB". ILIAS rounds these, so
    the result is only an approximation.
    """

    match = re.search(r"(\d+(?:[.,]\d+)?)\s*(Bytes?|[KMG]B|B)\b", text, re.IGNORECASE)
    if match is None:
        return None

    number = float(match.group(1).replace(",", "."))
    return int(number * _SIZE_UNITS[match.group(2).lower()])


def find_date_in_text(text: str) -> Optional[datetime]:
    match = re.search(
        r"(((\d+\. \w+\.? \d+)|(Gestern|Yesterday)|(Heute|Today)|(Morgen|Tomorrow)), \d+:\d+)",
        text
    )
    if match is not None:
        return demangle_date(match.group(1))
    return None


german_months = ['Jan', 'Feb', 'Mär', 'Apr', 'Mai', 'Jun', 'Jul', 'Aug', 'Sep', 'Okt', 'Nov', 'Dez']
english_months = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']


def demangle_date(date_str: str, fail_silently: bool = False) -> Optional[datetime]:
    """
    Demangle a date in one of the following formats (the time is optional):
    "Gestern, HH:MM"
    "Heute, HH:MM"
    "Morgen, HH:MM"
    "dd. mon yyyy, HH:MM"
    """

    try:
        date_str = re.sub(r"\s+", " ", date_str)

        date_str = re.sub("Gestern|Yesterday", _format_date_english(_yesterday()), date_str, flags=re.I)
        date_str = re.sub("Heute|Today", _format_date_english(date.today()), date_str, flags=re.I)
        date_str = re.sub("Morgen|Tomorrow", _format_date_english(_tomorrow()), date_str, flags=re.I)
        date_str = date_str.strip()
        for german, english in zip(german_months, english_months):
            date_str = date_str.replace(german, english)
            # "20. Apr. 2020" -> "20. Apr 2020"
            date_str = date_str.replace(english + ".", english)

        # Now "dd. mmm yyyy, hh:mm" or "dd. mmm yyyy"
        if ", " in date_str:
            day_part, time_part = date_str.split(",")
        else:
            day_part = date_str.split(",")[0]
            time_part = None

        day_str, month_str, year_str = day_part.split(" ")

        day = int(day_str.strip().replace(".", ""))
        month = english_months.index(month_str.strip()) + 1
        year = int(year_str.strip())

        if time_part:
            hour_str, minute_str = time_part.split(":")
            return datetime(year, month, day, int(hour_str), int(minute_str))

        return datetime(year, month, day)
    except ValueError:
        if not fail_silently:
            log.warn(f"Date parsing failed for {date_str!r}")
        return None


def _format_date_english(date_to_format: date) -> str:
    month = english_months[date_to_format.month - 1]
    return f"{date_to_format.day:02d}. {month} {date_to_format.year:04d}"


def _yesterday() -> date:
    return date.today() - timedelta(days=1)


def _tomorrow() -> date:
    return date.today() + timedelta(days=1)


def sanitize_path_name(name: str) -> str:
    name = re.sub(r"\s+", " ", name.replace("/", "-").replace("\\", "-")).strip()
    if name in {"", ".", ".."}:
        return f"_{name}"
    return name
