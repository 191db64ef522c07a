# PYTHON_ARGCOMPLETE_OK
"""
Command line front end.

`machine-pull [OPTIONS] {tar URL [NAME] | raw URL [NAME] | help}`

Options may be given before or after the command. ``MACHINE_PULL_IMAGE_ROOT``
and ``MACHINE_PULL_LOG_LEVEL`` set defaults for ``--image-root`` and the log
level.
"""

import argparse
import errno
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

import argcomplete
from argcomplete.completers import DirectoriesCompleter

from . import __version__
from .driver import FORMATS, PullConfig, pull_image
from .errors import PullError
from .flags import PULL_FLAGS_DEFAULT, PullFlags, VerificationMode, parse_boolean
from .images import DEFAULT_IMAGE_ROOT

logger = logging.getLogger(__package__)

PROG = "machine-pull"

# applied in this order, so that --roothash=no always wins over --roothash-signature
BOOLEAN_OPTIONS = (
    ("settings", PullFlags.SETTINGS, "download settings file with image"),
    ("roothash_signature", PullFlags.ROOTHASH_SIGNATURE, "download root hash signature file with image"),
    ("verity", PullFlags.VERITY, "download verity file with image"),
    ("roothash", PullFlags.ROOTHASH, "download root hash file with image"),
)


def _add_options(parser: argparse.ArgumentParser, suppress: bool) -> None:
    """Options shared by the main parser and every command.

    On the command parsers defaults are suppressed, so an option given before
    the command is not reset by the command's own parser.
    """

    def default(value):
        return argparse.SUPPRESS if suppress else value

    parser.add_argument(
        "--force",
        action="store_true",
        default=default(False),
        help="force creation of image",
    )
    action = parser.add_argument(
        "--image-root",
        metavar="PATH",
        default=default(os.getenv("MACHINE_PULL_IMAGE_ROOT", DEFAULT_IMAGE_ROOT)),
        help="image root directory (default: %(default)s)",
    )
    action.completer = DirectoriesCompleter()  # type: ignore
    parser.add_argument(
        "--verify",
        metavar="MODE",
        default=default(str(VerificationMode.SIGNATURE)),
        help="verify downloaded image, one of: 'no', 'checksum', 'signature'",
    )
    for dest, _, text in BOOLEAN_OPTIONS:
        parser.add_argument(
            "--" + dest.replace("_", "-"),
            dest=dest,
            metavar="BOOL",
            default=default(None),
            help=text,
        )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=default(False),
        help="set logging level to DEBUG",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Download container or virtual machine images.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    _add_options(parser, suppress=False)

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    for name, text in (("tar", "download a TAR image"), ("raw", "download a RAW image")):
        sub = commands.add_parser(name, help=text, description=text.capitalize() + ".")
        _add_options(sub, suppress=True)
        sub.add_argument("url", metavar="URL", help="HTTP or HTTPS URL of the image")
        sub.add_argument(
            "name",
            metavar="NAME",
            nargs="?",
            default=None,
            help="local image name; '-' or '' to download without storing",
        )
    commands.add_parser("help", help="show this help")
    return parser


def build_config(args: argparse.Namespace) -> PullConfig:
    """Turn parsed options into a PullConfig; raises PullError on bad values."""
    flags = PULL_FLAGS_DEFAULT
    if args.force:
        flags |= PullFlags.FORCE

    for dest, flag, _ in BOOLEAN_OPTIONS:
        value = getattr(args, dest)
        if value is None:
            continue
        try:
            flags = flags.set(flag, parse_boolean(value))
        except PullError as e:
            raise type(e)(f"Failed to parse --{dest.replace('_', '-')}= parameter '{value}'") from e

    return PullConfig(
        image_root=Path(args.image_root),
        flags=flags,
        verify=VerificationMode.from_string(args.verify),
    )


def setup_logging(verbose: bool = False) -> None:
    level = os.getenv("MACHINE_PULL_LOG_LEVEL", "INFO").upper()
    if verbose:
        level = "DEBUG"
    logging.basicConfig(format="%(message)s", level=logging.WARNING)
    try:
        logger.setLevel(level)
    except ValueError:
        logger.setLevel(logging.INFO)
        logger.warning(f"[-] Unknown log level '{level}', using INFO")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    argcomplete.autocomplete(parser)
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.command == "help":
        parser.print_help()
        return 0
    if args.command is None:
        parser.print_usage(sys.stderr)
        logger.error("[-] Command verb required.")
        return errno.EINVAL

    try:
        config = build_config(args)
    except PullError as e:
        logger.error(f"[-] {e}")
        return e.errno

    logger.debug(f"[ ] Image root: {config.image_root}, verify: {config.verify}, flags: {config.flags!r}")
    return pull_image(FORMATS[args.command], config, args.url, args.name)


def script_entry():
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        # only reachable before the event loop has taken over SIGINT
        logger.warning("[-] Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    script_entry()
