import argparse
from argparse import ArgumentTypeError
from pathlib import Path
from typing import Any, Callable, Dict

from ..version import NAME, VERSION


class ParserLoadError(Exception):
    pass


def show_value_error(inner: Callable[[str], Any]) -> Callable[[str], Any]:
    """
    argparse only pretty-prints ArgumentTypeErrors, but our from_string
    functions raise ValueErrors.
    """

    def wrapper(input: str) -> Any:
        try:
            return inner(input)
        except ValueError as e:
            raise ArgumentTypeError(e)
    return wrapper


def positive(convert: Callable[[str], Any]) -> Callable[[str], Any]:
    def wrapper(input: str) -> Any:
        value = convert(input)
        if value <= 0:
            raise ValueError("must be greater than 0")
        return value
    return show_value_error(wrapper)


def yes_no(value: bool) -> str:
    return "yes" if value else "no"


PARSER = argparse.ArgumentParser(
    prog=NAME,
    description="Mirror ILIAS courses and folders into local directories",
)
PARSER.set_defaults(command=None)
PARSER.add_argument(
    "--version",
    action="version",
    version=f"{NAME} {VERSION}",
)
PARSER.add_argument(
    "--config", "-c",
    type=Path,
    metavar="PATH",
    help="custom config file"
)
PARSER.add_argument(
    "--sync", "-s",
    action="append",
    type=str,
    metavar="NAME",
    help="only run this sync. Can be specified multiple times"
)
PARSER.add_argument(
    "--skip", "-S",
    action="append",
    type=str,
    metavar="NAME",
    help="don't run this sync. Can be specified multiple times"
)
PARSER.add_argument(
    "--working-dir",
    type=Path,
    metavar="PATH",
    help="directory that relative output paths start from"
)

# The default of None leaves the config file's value alone
OUTPUT_GROUP = PARSER.add_argument_group(title="output")
for flag, description in [
    ("--explain", "explain in detail what the mirror is doing"),
    ("--status", "print a line for every file or folder while syncing"),
    ("--report", "print a report of all local changes before exiting"),
    ("--show-orphaned", "mention kept files that are gone remotely"),
]:
    OUTPUT_GROUP.add_argument(flag, action=argparse.BooleanOptionalAction, help=description)


def general_options(args: argparse.Namespace) -> Dict[str, str]:
    """
    The options for the config's DEFAULT section that were given on the
    command line.
    """

    options: Dict[str, str] = {}
    if args.working_dir is not None:
        options["working_dir"] = str(args.working_dir)
    for key in ["explain", "status", "report", "show_orphaned"]:
        if (value := getattr(args, key)) is not None:
            options[key] = yes_no(value)
    return options


SUBPARSERS = PARSER.add_subparsers(title="commands")
