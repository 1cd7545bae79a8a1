import argparse
import configparser
from pathlib import Path
from typing import Any, Callable, List, Tuple

from ..logging import log
from ..mirror import Orphans
from ..planner import OnConflict
from .parser import SUBPARSERS, ParserLoadError, positive, show_value_error, yes_no

COMMAND_NAME = "sync"

SUBPARSER = SUBPARSERS.add_parser(
    COMMAND_NAME,
    help="mirror a single ILIAS course, folder or the personal desktop",
)

GROUP = SUBPARSER.add_argument_group(
    title=f"{COMMAND_NAME} arguments",
    description="build a sync from the command line instead of the config file",
)
GROUP.add_argument("target", metavar="TARGET", help="course id, 'desktop', or ILIAS URL to sync")
GROUP.add_argument("output", type=Path, metavar="OUTPUT", help="output directory")

AUTH_GROUP = SUBPARSER.add_argument_group(title="authentication")
AUTH_GROUP.add_argument("--username", "-u", metavar="USERNAME", help="user name for authentication")
AUTH_GROUP.add_argument(
    "--keyring",
    action="store_true",
    help="use the system keyring to store and retrieve passwords",
)
AUTH_GROUP.add_argument(
    "--credential-file",
    type=Path,
    metavar="PATH",
    help="read username and password from a credential file",
)

# Option name, config key, how the value is written to the config and the
# remaining add_argument keywords
Option = Tuple[List[str], str, Callable[[Any], str], dict]

SYNC_OPTIONS: List[Option] = [
    (["--base-url"], "base_url", str,
     dict(metavar="URL", help="address of the ILIAS instance")),
    (["--login-type"], "login_type", str,
     dict(choices=["shibboleth", "local"], help="log in via single sign-on or the ILIAS login form")),
    (["--client-id"], "client_id", str,
     dict(metavar="ID", help="ILIAS client id, needed for the 'local' login type")),
    (["--rate", "-r"], "rate", str,
     dict(type=positive(float), metavar="N", help="maximum number of requests per rate period")),
    (["--rate-period"], "rate_period", str,
     dict(type=positive(float), metavar="SECONDS", help="length of the rate period (default 60 seconds)")),
    (["--burst"], "rate_burst", str,
     dict(type=positive(int), metavar="N", help="how many requests may be sent at once after a quiet phase")),
    (["--tasks", "-n"], "tasks", str,
     dict(type=positive(int), metavar="N", help="maximum number of concurrent tasks (crawling, downloading)")),
    (["--downloads", "-N"], "downloads", str,
     dict(type=positive(int), metavar="N", help="maximum number of tasks that may download at the same time")),
    (["--http-timeout", "-t"], "http_timeout", str,
     dict(type=positive(float), metavar="SECONDS", help="timeout for all HTTP requests")),
    (["--on-conflict"], "on_conflict", lambda v: v.value,
     dict(type=show_value_error(OnConflict.from_string), metavar="OPTION",
          help="what to do with local files the mirror did not create: 'local-first' or 'remote-first'")),
    (["--orphans"], "orphans", lambda v: v.value,
     dict(type=show_value_error(Orphans.from_string), metavar="OPTION",
          help="what to do with local files that are gone remotely: 'keep' or 'delete'")),
    (["--include", "-i"], "include", lambda v: "\n" + "\n".join(v),
     dict(action="append", metavar="GLOB", help="only sync files matching this pattern. Can be given multiple times")),
    (["--exclude", "-x"], "exclude", lambda v: "\n" + "\n".join(v),
     dict(action="append", metavar="GLOB",
          help="don't sync files or folders matching this pattern. Can be given multiple times")),
    (["--videos"], "videos", yes_no,
     dict(action=argparse.BooleanOptionalAction, help="download Opencast recordings (on by default)")),
    (["--forums"], "forums", yes_no,
     dict(action=argparse.BooleanOptionalAction, help="save forum threads as HTML pages")),
    (["--skip-files"], "skip_files", yes_no,
     dict(action="store_const", const=True, help="don't download regular files, only videos and forums")),
    (["--force", "-f"], "force", yes_no,
     dict(action="store_const", const=True, help="download every file again, even unchanged ones")),
    (["--windows-paths"], "windows_paths", yes_no,
     dict(action=argparse.BooleanOptionalAction, help="whether to repair invalid paths on windows")),
]

SYNC_GROUP = SUBPARSER.add_argument_group(title="sync options")
for flags, key, _, kwargs in SYNC_OPTIONS:
    SYNC_GROUP.add_argument(*flags, dest=key, **kwargs)


def load(args: argparse.Namespace, parser: configparser.ConfigParser) -> None:
    log.explain(f"Creating config for command '{COMMAND_NAME}'")

    section = {
        "target": str(args.target),
        "output_dir": str(args.output),
        "auth": "auth:ilias",
    }
    for _, key, to_config, _ in SYNC_OPTIONS:
        value = getattr(args, key)
        if value is not None:
            section[key] = to_config(value)
    parser["sync:ilias"] = section

    if args.credential_file is not None:
        if args.username is not None:
            raise ParserLoadError("--credential-file and --username can't be used together")
        if args.keyring:
            raise ParserLoadError("--credential-file and --keyring can't be used together")
        parser["auth:ilias"] = {"type": "credential-file", "path": str(args.credential_file)}
    else:
        parser["auth:ilias"] = {"type": "keyring" if args.keyring else "simple"}
    if args.username is not None:
        parser["auth:ilias"]["username"] = args.username


SUBPARSER.set_defaults(command=load)
