import argparse
import asyncio
import configparser
import sys

from .auth import AuthLoadError
from .cli import PARSER, ParserLoadError, general_options
from .config import Config, ConfigLoadError, ConfigOptionError
from .logging import log
from .mirror import Mirror, MirrorLoadError


def load_config(args: argparse.Namespace) -> Config:
    log.explain_topic("Loading config")

    try:
        if args.command is None:
            config = Config.from_file(args.config)
        else:
            parser = configparser.ConfigParser(interpolation=None)
            args.command(args, parser)
            config = Config(parser)
    except ConfigLoadError as e:
        log.error(str(e))
        log.error_contd(e.reason)
        sys.exit(1)
    except ParserLoadError as e:
        log.error(str(e))
        sys.exit(1)

    # Command line options win over the config file
    config.override_general(general_options(args))
    return config


def configure_logging(config: Config) -> None:
    try:
        log.output_explain = config.general.explain()
        log.output_status = config.general.status()
        log.output_report = config.general.report()
        log.output_orphaned = config.general.show_orphaned()
    except ConfigOptionError as e:
        log.error(str(e))
        sys.exit(1)


async def run_with_progress(mirror: Mirror) -> None:
    with log.show_progress():
        await mirror.run()


def main() -> None:
    args = PARSER.parse_args()

    # Only an explicit --explain can explain loading the config
    log.output_explain = bool(args.explain)
    config = load_config(args)
    configure_logging(config)

    try:
        mirror = Mirror(config, args.sync, args.skip)
    except MirrorLoadError as e:
        log.error(str(e))
        sys.exit(1)

    try:
        asyncio.run(run_with_progress(mirror))
    except (ConfigOptionError, AuthLoadError) as e:
        log.flush()
        log.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        log.flush()
        log.explain_topic("Interrupted, exiting immediately")
        log.explain("Finished downloads were recorded, unfinished ones were discarded")
        mirror.print_report()
        sys.exit(1)
    except Exception:
        log.flush()
        log.unexpected_exception()
        mirror.print_report()
        sys.exit(1)

    mirror.print_report()
    sys.exit(mirror.exit_code())


if __name__ == "__main__":
    main()
