import asyncio
import sys
import traceback
from contextlib import AbstractContextManager, contextmanager
from enum import Enum
from typing import Iterator, List, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markup import escape
from rich.progress import (BarColumn, DownloadColumn, Progress, TaskID, TextColumn, TimeRemainingColumn,
                           TransferSpeedColumn)
from rich.table import Column

from .utils import agetpass, ainput


class Status(Enum):
    """
    The kinds of per-item lines printed while syncing.
    """

    CRAWLING = ("Crawling", "bold bright_cyan")
    CRAWLED = ("Crawled", "bold cyan")
    EXCLUDED = ("Excluded", "bold bright_black")
    IGNORED = ("Ignored", "bold bright_black")
    DOWNLOADING = ("Downloading", "bold bright_cyan")
    ADDED = ("Added", "bold bright_green")
    CHANGED = ("Changed", "bold bright_yellow")
    MOVED = ("Moved", "bold bright_yellow")
    CONFLICT = ("Conflict", "bold bright_red")
    FAILED = ("Failed", "bold bright_red")
    ORPHANED = ("Orphaned", "bold bright_magenta")
    DELETED = ("Deleted", "bold bright_magenta")

    def __init__(self, label: str, style: str):
        self.label = label
        self.style = style

    def markup(self, width: int = 0) -> str:
        return f"[{self.style}]{escape(self.label.ljust(width))}[/]"


class ProgressBar:
    def __init__(self, progress: Progress, taskid: TaskID):
        self._progress = progress
        self._taskid = taskid

    def advance(self, amount: float = 1) -> None:
        self._progress.advance(self._taskid, advance=amount)

    def set_total(self, total: float) -> None:
        self._progress.update(self._taskid, total=total)
        self._progress.start_task(self._taskid)


def _description_column() -> TextColumn:
    return TextColumn("{task.description}", table_column=Column(ratio=1))


class Log:
    """
    All terminal output of a mirror run: status lines for single files, the
    final report, the optional explanations and the live progress bars.
    """

    STATUS_WIDTH = 11

    def __init__(self) -> None:
        self.console = Console(highlight=False)

        self._crawl_progress = Progress(_description_column(), BarColumn(), TimeRemainingColumn(), expand=True)
        self._download_progress = Progress(
            _description_column(),
            TransferSpeedColumn(),
            DownloadColumn(),
            BarColumn(),
            TimeRemainingColumn(),
            expand=True,
        )
        self._live = Live(console=self.console, transient=True)
        self._live_running = False

        # Lines printed while a prompt has the terminal
        self._held_back: Optional[List[str]] = None
        self._prompt_lock: Optional[asyncio.Lock] = None

        self.output_explain = False
        self.output_status = True
        self.output_report = True
        # Kept files whose remote counterpart is gone can be many, so they can
        # be hidden separately
        self.output_orphaned = True

    def _visible(self, status: Status) -> bool:
        return status != Status.ORPHANED or self.output_orphaned

    def _refresh_live(self) -> None:
        bars = [p for p in (self._crawl_progress, self._download_progress) if p.task_ids]
        self._live.update(Group(*bars))

    @contextmanager
    def show_progress(self) -> Iterator[None]:
        if self._live_running:
            raise RuntimeError("Progress bars are already shown")

        self._refresh_live()
        self._live_running = True
        try:
            with self._live:
                yield
        finally:
            self._live_running = False

    async def ask(self, prompt: str, secret: bool = False) -> str:
        """
        Ask the user for a line of input, e. g. a password. The progress bars
        are hidden meanwhile and only one question is asked at a time.
        """

        if self._prompt_lock is None:
            self._prompt_lock = asyncio.Lock()

        async with self._prompt_lock:
            if self._live_running:
                self._live.stop()
            self._held_back = []
            try:
                return await (agetpass(prompt) if secret else ainput(prompt))
            finally:
                self.flush()
                if self._live_running:
                    self._live.start()

    def flush(self) -> None:
        """
        Print the lines held back during a prompt. Also meant for the last
        messages after the event loop was stopped in the middle of a prompt.
        """

        held_back, self._held_back = self._held_back, None
        for line in held_back or []:
            self.print(line)

    def print(self, text: str) -> None:
        """
        Print a normal message. Allows markup.
        """

        if self._held_back is not None:
            self._held_back.append(text)
        else:
            self.console.print(text)

    def warn(self, text: str) -> None:
        """
        Print a warning message. Allows no markup.
        """

        self.print(f"[bold bright_red]Warning[/] {escape(text)}")

    def warn_contd(self, text: str) -> None:
        self.print(escape(text))

    def error(self, text: str) -> None:
        """
        Print an error message. Allows no markup.
        """

        self.print(f"[bold bright_red]Error[/] [red]{escape(text)}")

    def error_contd(self, text: str) -> None:
        self.print(f"[red]{escape(text)}")

    def unexpected_exception(self) -> None:
        """
        Call this in an "except" clause to log an unexpected exception.
        """

        self.error("An unexpected exception occurred")
        if sys.exc_info()[0] is None:
            lines = traceback.format_stack()
        else:
            lines = traceback.format_exc().splitlines()
        for line in lines:
            self.error_contd(line.rstrip("\n"))
        self.print("Please attach this output to a bug report, without your username and private file names.")

    def explain_topic(self, text: str) -> None:
        if self.output_explain:
            self.print(f"[yellow]{escape(text)}")

    def explain(self, text: str) -> None:
        if self.output_explain:
            self.print(f"  {escape(text)}")

    def status(self, status: Status, text: str, note: str = "") -> None:
        """
        Print what just happened to a single file or folder. Allows markup in
        "note" only.
        """

        if self.output_status and self._visible(status):
            self.print(f"{status.markup(self.STATUS_WIDTH)} {escape(text)} {note}".rstrip())

    def report(self, text: str, status: Optional[Status] = None) -> None:
        """
        Print a line of the report shown after syncing. Allows markup.
        """

        if not self.output_report:
            return
        if status is None:
            self.print(text)
        elif self._visible(status):
            self.print(f"  {status.markup()} {text}")

    @contextmanager
    def _bar(self, progress: Progress, status: Status, text: str) -> Iterator[ProgressBar]:
        # Starts out indeterminate until set_total is called
        taskid = progress.add_task(f"{status.markup(self.STATUS_WIDTH)} {escape(text)}", start=False)
        self._refresh_live()
        try:
            yield ProgressBar(progress, taskid)
        finally:
            progress.remove_task(taskid)
            self._refresh_live()

    def crawl_bar(self, text: str) -> AbstractContextManager[ProgressBar]:
        return self._bar(self._crawl_progress, Status.CRAWLING, text)

    def download_bar(self, text: str) -> AbstractContextManager[ProgressBar]:
        return self._bar(self._download_progress, Status.DOWNLOADING, text)


log = Log()
