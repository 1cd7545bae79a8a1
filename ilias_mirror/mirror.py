import os
import re
from enum import Enum
from pathlib import Path, PurePath
from typing import Dict, List, Optional, Tuple

from rich.markup import escape

from .auth import Authenticator, AuthError, load_authenticator
from .config import Config, Section
from .crawl import TreeCrawler
from .deduplicator import Deduplicator
from .downloader import DownloadEngine
from .filter import Filter, parse_patterns
from .limiter import Limiter, RateGate
from .logging import Status, log
from .login import LocalLogin, Login, ShibbolethLogin
from .manifest import ManifestEntry, ManifestError, ManifestStore
from .output_dir import OutputDirectory, OutputDirError
from .planner import OnConflict, SyncPlan, plan
from .report import SyncReport
from .session import SessionManager
from .utils import fmt_path

DEFAULT_BASE_URL = "https://ilias.studium.kit.edu"


class MirrorLoadError(Exception):
    pass


class Orphans(Enum):
    KEEP = "keep"
    DELETE = "delete"

    @staticmethod
    def from_string(string: str) -> "Orphans":
        try:
            return Orphans(string)
        except ValueError:
            raise ValueError("must be one of 'keep', 'delete'")


class SyncSection(Section):
    def skip(self) -> bool:
        return self.boolean("skip", fallback=False)

    def output_dir(self, name: str) -> Path:
        name = name.removeprefix("sync:")
        return Path(self.s.get("output_dir", name)).expanduser()

    def base_url(self) -> str:
        value = self.s.get("base_url", DEFAULT_BASE_URL).rstrip("/")
        if not re.match(r"https?://", value):
            self.invalid_value("base_url", value, "Must be an http or https URL")
        return value

    def target(self) -> str:
        """
        The URL of the page to start crawling at.
        """

        target = self.s.get("target")
        if not target:
            self.missing_value("target")

        base_url = self.base_url()
        if re.fullmatch(r"\d+", target):
            # Course id
            return f"{base_url}/goto.php?target=crs_{target}"
        if target == "desktop":
            # Full personal desktop
            return f"{base_url}/ilias.php?baseClass=ilDashboardGUI&cmd=show"
        if target.startswith(base_url):
            # URL
            return target

        self.invalid_value("target", target, "Should be <course id | desktop | ilias URL>")

    def auth(self, authenticators: Dict[str, Authenticator]) -> Authenticator:
        value = self.s.get("auth")
        if value is None:
            self.missing_value("auth")
        auth = authenticators.get(value)
        if auth is None:
            self.invalid_value("auth", value, "No such auth section exists")
        return auth

    def tfa_auth(self, authenticators: Dict[str, Authenticator]) -> Optional[Authenticator]:
        value: Optional[str] = self.s.get("tfa_auth")
        if value is None:
            return None
        auth = authenticators.get(value)
        if auth is None:
            self.invalid_value("tfa_auth", value, "No such auth section exists")
        return auth

    def login(self, authenticators: Dict[str, Authenticator]) -> Login:
        login_type = self.s.get("login_type", "shibboleth")
        if login_type == "shibboleth":
            return ShibbolethLogin(self.base_url(), self.auth(authenticators), self.tfa_auth(authenticators))
        if login_type == "local":
            client_id = self.s.get("client_id")
            if not client_id:
                self.missing_value("client_id")
            return LocalLogin(self.base_url(), self.auth(authenticators), client_id)

        self.invalid_value("login_type", login_type, "Should be <shibboleth | local>")

    def rate(self) -> float:
        return self.positive_float("rate", fallback=8)

    def rate_period(self) -> float:
        return self.positive_float("rate_period", fallback=60)

    def rate_burst(self) -> int:
        return self.positive_int("rate_burst", fallback=1)

    def tasks(self) -> int:
        return self.positive_int("tasks", fallback=1)

    def downloads(self) -> int:
        tasks = self.tasks()
        value = self.integer("downloads", fallback=None)
        if value is None:
            return tasks
        if value <= 0:
            self.invalid_value("downloads", value, "Must be greater than 0")
        if value > tasks:
            self.invalid_value("downloads", value, "Must not be greater than tasks")
        return value

    def http_timeout(self) -> float:
        return self.positive_float("http_timeout", fallback=30)

    def crawl_attempts(self) -> int:
        return self.positive_int("crawl_attempts", fallback=3)

    def download_attempts(self) -> int:
        return self.positive_int("download_attempts", fallback=3)

    def auth_attempts(self) -> int:
        return self.positive_int("auth_attempts", fallback=3)

    def backoff(self) -> float:
        return self.positive_float("backoff", fallback=1.0)

    def on_conflict(self) -> OnConflict:
        return self.choice("on_conflict", "local-first", OnConflict.from_string)

    def orphans(self) -> Orphans:
        return self.choice("orphans", "keep", Orphans.from_string)

    def filter(self) -> Filter:
        return Filter(
            include=parse_patterns(self.s.get("include", "")),
            exclude=parse_patterns(self.s.get("exclude", "")),
        )

    def windows_paths(self) -> bool:
        on_windows = os.name == "nt"
        return self.boolean("windows_paths", fallback=on_windows)

    def manifest_batch(self) -> int:
        return self.positive_int("manifest_batch", fallback=25)

    def videos(self) -> bool:
        return self.boolean("videos", fallback=True)

    def forums(self) -> bool:
        return self.boolean("forums", fallback=False)

    def skip_files(self) -> bool:
        return self.boolean("skip_files", fallback=False)

    def force(self) -> bool:
        return self.boolean("force", fallback=False)


def apply_orphan_policy(
        orphaned: List[ManifestEntry],
        policy: Orphans,
        crawl_complete: bool,
        output_dir: OutputDirectory,
        manifest: ManifestStore,
        report: SyncReport,
) -> None:
    """
    Delete or keep the files whose remote counterpart has disappeared. Nothing
    is deleted unless asked to, and never after an incomplete crawl.
    """

    delete = policy == Orphans.DELETE
    if delete and not crawl_complete:
        log.warn("Not deleting orphaned files because parts of the remote tree could not be crawled")
        report.add_warning("Orphaned files were kept because parts of the remote tree could not be crawled")
        delete = False

    for entry in orphaned:
        path = entry.relative_path
        if delete:
            try:
                deleted = output_dir.delete(path, entry.size)
            except OutputDirError as e:
                log.warn(str(e))
                deleted = False
            if deleted:
                manifest.remove(path)
                report.delete(path)
                log.status(Status.DELETED, fmt_path(path))
                continue

        manifest.mark_stale(path)
        report.orphan(path)
        log.status(Status.ORPHANED, fmt_path(path))


class Mirror:
    def __init__(self, config: Config, cli_syncs: Optional[List[str]], cli_skips: Optional[List[str]]):
        """
        May throw MirrorLoadError.
        """

        self._config = config
        self._syncs_to_run = self._find_syncs_to_run(config, cli_syncs, cli_skips)

        self._authenticators: Dict[str, Authenticator] = {}
        self._results: Dict[str, Tuple[OutputDirectory, SyncReport]] = {}
        self._fatal = False

    def _find_config_syncs(self, config: Config) -> List[str]:
        sync_sections = []

        for name, section in config.sections("sync:"):
            if SyncSection(section).skip():
                log.explain(f"Skipping {name!r}")
            else:
                sync_sections.append(name)

        return sync_sections

    def _find_cli_syncs(self, config: Config, cli_syncs: List[str]) -> List[str]:
        if len(cli_syncs) != len(set(cli_syncs)):
            raise MirrorLoadError("Some syncs were selected multiple times")

        sync_sections = [name for name, _ in config.sections("sync:")]

        syncs_to_run = []  # With sync: prefix
        unknown_names = []  # Without sync: prefix

        for name in cli_syncs:
            section_name = f"sync:{name}"
            if section_name in sync_sections:
                log.explain(f"Sync section named {section_name!r} exists")
                syncs_to_run.append(section_name)
            else:
                log.explain(f"There's no sync section named {section_name!r}")
                unknown_names.append(name)

        if unknown_names:
            if len(unknown_names) == 1:
                [name] = unknown_names
                raise MirrorLoadError(f"There is no sync named {name!r}")
            else:
                names_str = ", ".join(repr(name) for name in unknown_names)
                raise MirrorLoadError(f"There are no syncs named {names_str}")

        return syncs_to_run

    def _find_syncs_to_run(
            self,
            config: Config,
            cli_syncs: Optional[List[str]],
            cli_skips: Optional[List[str]],
    ) -> List[str]:
        log.explain_topic("Deciding which syncs to run")

        syncs: List[str]
        if cli_syncs is None:
            log.explain("No syncs specified on CLI")
            log.explain("Running syncs specified in config")
            syncs = self._find_config_syncs(config)
        else:
            log.explain("Syncs specified on CLI")
            syncs = self._find_cli_syncs(config, cli_syncs)

        skips = {f"sync:{name}" for name in cli_skips} if cli_skips else set()
        for sync in syncs:
            if sync in skips:
                log.explain(f"Skipping sync {sync!r}")
        syncs = [sync for sync in syncs if sync not in skips]

        return syncs

    def _load_authenticators(self) -> None:
        for name, section in self._config.sections("auth:"):
            log.print(f"[bold bright_cyan]Loading[/] {escape(name)}")
            self._authenticators[name] = load_authenticator(name, section, self._config)

    @property
    def reports(self) -> Dict[str, SyncReport]:
        return {name: report for name, (_, report) in self._results.items()}

    def exit_code(self) -> int:
        """
        0 if everything worked, 1 if a sync could not be carried out at all, 2
        if some files could not be synced.
        """

        if self._fatal:
            return 1
        if any(not report.ok for _, report in self._results.values()):
            return 2
        return 0

    async def run(self) -> None:
        """
        May throw ConfigOptionError or AuthLoadError.
        """

        # This must run inside the same event loop as the syncs, so that any
        # new objects (like Locks or Futures) get the correct event loop.
        self._load_authenticators()

        log.print("")

        sections = dict(self._config.sections("sync:"))
        for name in self._syncs_to_run:
            section = SyncSection(sections[name])
            log.print(f"[bold bright_cyan]Running[/] {escape(name)}")

            try:
                await self._run_sync(name, section)
            except (AuthError, ManifestError, OutputDirError) as e:
                self._fatal = True
                log.error(str(e))
                if name in self._results:
                    self._results[name][1].add_error(str(e))

    async def _run_sync(self, name: str, section: SyncSection) -> None:
        working_dir = self._config.general.working_dir()
        output_dir = OutputDirectory(working_dir / section.output_dir(name))
        report = SyncReport()
        self._results[name] = (output_dir, report)

        # Read every option before touching the disk or the network
        root_url = section.target()
        authenticators = self._authenticators
        login = section.login(authenticators)
        gate = RateGate(section.rate(), period=section.rate_period(), burst=section.rate_burst())
        limiter = Limiter(task_limit=section.tasks(), download_limit=section.downloads())
        deduplicator = Deduplicator(section.windows_paths())
        path_filter = section.filter()
        on_conflict = section.on_conflict()
        orphans = section.orphans()
        force = section.force()

        output_dir.prepare()
        output_dir.remove_leftover_tmp_files()
        prev_report = output_dir.load_prev_report()

        manifest = ManifestStore(output_dir.manifest_path)
        manifest.load()

        session = SessionManager(
            section.base_url(),
            login,
            gate,
            cookie_path=output_dir.cookie_path,
            http_timeout=section.http_timeout(),
            auth_attempts=section.auth_attempts(),
            backoff=section.backoff(),
        )

        try:
            async with session:
                await session.authenticate()

                crawler = TreeCrawler(
                    session,
                    limiter,
                    filter=path_filter,
                    deduplicator=deduplicator,
                    attempts=section.crawl_attempts(),
                    backoff=section.backoff(),
                    videos=section.videos(),
                    forums=section.forums(),
                    skip_files=section.skip_files(),
                )
                nodes = [node async for node in crawler.crawl(root_url)]
                for failure in crawler.failures:
                    report.fail(failure.path, f"Could not crawl folder: {failure.reason}")

                sync_plan: SyncPlan = plan(
                    nodes,
                    manifest.entries,
                    output_dir.local_files(),
                    on_conflict,
                    crawler.incomplete_paths,
                    force=force,
                )
                if prev_report is not None and prev_report.failed:
                    log.explain(f"Retrying the {len(prev_report.failed)} file(s) that failed last time first")
                    sync_plan.prioritize(prev_report.failed.keys())

                engine = DownloadEngine(
                    session,
                    limiter,
                    output_dir,
                    manifest,
                    attempts=section.download_attempts(),
                    backoff=section.backoff(),
                    manifest_batch=section.manifest_batch(),
                )
                await engine.execute(sync_plan, report)

                apply_orphan_policy(sync_plan.orphaned, orphans, crawler.error_free, output_dir, manifest, report)
                if manifest.dirty:
                    manifest.commit()
        finally:
            output_dir.store_report(report)

    def print_report(self) -> None:
        for name in self._syncs_to_run:
            result = self._results.get(name)
            if result is None:
                continue  # Sync failed to load

            output_dir, report = result

            log.report("")
            log.report(f"[bold bright_cyan]Report[/] for {escape(name)}")

            def link(relative_path: PurePath) -> str:
                # The URI form quotes spaces and other special characters
                uri = output_dir.resolve(relative_path).absolute().as_uri()
                return f"[link={uri}]{escape(fmt_path(relative_path))}[/link]"

            lines: List[Tuple[Status, str]] = []
            lines += [(Status.ADDED, link(path)) for path in sorted(report.created)]
            lines += [(Status.CHANGED, link(path)) for path in sorted(report.updated.difference(report.moved))]
            lines += [
                (Status.MOVED, f"{escape(fmt_path(old))} -> {link(new)}")
                for new, old in sorted(report.moved.items())
            ]
            lines += [(Status.DELETED, escape(fmt_path(path))) for path in sorted(report.deleted)]
            lines += [(Status.ORPHANED, link(path)) for path in sorted(report.orphaned)]
            lines += [(Status.CONFLICT, link(path)) for path in sorted(report.conflicts)]
            lines += [
                (Status.FAILED, f"{escape(fmt_path(path))} {escape(reason)}")
                for path, reason in sorted(report.failed.items())
            ]

            for status, text in lines:
                log.report(text, status)
            for warning in report.encountered_warnings:
                log.report(f"  [bold bright_red]Warning[/] {escape(warning)}")
            for error in report.encountered_errors:
                log.report(f"  [bold bright_red]Error[/] {escape(error)}")

            if not lines and not report.encountered_warnings and not report.encountered_errors:
                log.report("  Nothing changed")

            counts = ", ".join(f"{key.capitalize()}: {value}" for key, value in report.counts().items())
            log.report(f"  [bright_black]{counts}")
