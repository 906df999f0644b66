"""Command-line interface for yall.

Usage::

    yall [yarn|npm command] [yarn|npm flags] [yall flags]

Flags yall does not know, and their values, are passed through to the
package-manager command together with the positional words, in their
original order. A bare ``--`` is dropped.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import shlex
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from . import __version__, logs
from .config import DEFAULT_CONCURRENCY, DEFAULT_WATCH_INTERVAL_SEC, RunConfiguration, load_config_file
from .coordinator import RunCoordinator
from .errors import YallError
from .watch import WatchLoop

logger = logging.getLogger(__name__)

# Combined short flags such as -vv
_VERBOSITY_RE = re.compile(r"^-(v+|q)$")

_CLI_ONLY_OPTIONS = ("config", "verbose", "quiet", "watch_content_files")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for yall's own flags.

    Options that are not given stay absent from the parsed namespace, so
    config-file values are only overridden by flags the user passed.
    """
    parser = argparse.ArgumentParser(
        prog="yall",
        usage="yall [yarn|npm command] [yarn|npm flags] [yall flags]",
        description="Run a yarn or npm command in every package folder of a tree.",
        argument_default=argparse.SUPPRESS,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", help="Increase verbosity")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only show warnings and errors")
    parser.add_argument("--config", type=Path, help="JSON/YAML file with default option values")

    run = parser.add_argument_group("run")
    run.add_argument(
        "--concurrency",
        "--con",
        type=int,
        help=f"Number of concurrently running commands (default {DEFAULT_CONCURRENCY})",
    )
    run.add_argument("--fail-fast", action="store_true", help="Exit on the first failure")
    run.add_argument("--npm", action="store_true", help="Use npm instead of yarn")
    run.add_argument("--manager-bin", help="Package-manager executable to run")
    run.add_argument("--cwd", help="Working root (default: current directory)")
    run.add_argument("--clean-up", action="store_true", help="Remove the modules folder before running")
    run.add_argument(
        "--link-file",
        "--link-files",
        dest="link_files",
        action="store_true",
        help="Create symlinks for `file:` dependencies",
    )
    run.add_argument("--lock", nargs="?", const=True, help="Write a lock file in the working root while running")
    run.add_argument("--lock-each", nargs="?", const=True, help="Write a lock file in each folder while running")
    run.add_argument("--no-exit-on-error", action="store_true", help="Exit with 0 even if folders fail")

    folders = parser.add_argument_group("folders")
    folders.add_argument("--folders", nargs="+", help="Root folders to search")
    folders.add_argument("--exclude-folders", nargs="+", help="Folders to skip")
    folders.add_argument("--include-folders", nargs="+", help="Folders always included")
    folders.add_argument("--here", action="store_true", help="Do not search folders recursively")
    folders.add_argument("--in", dest="in_folders", nargs="+", help="Run only in these folders")
    folders.add_argument("--dot-folders", action="store_true", help="Search hidden folders too")
    folders.add_argument("--modules-folder", help="Dependency modules folder name")
    folders.add_argument("--only-workspaces", action="store_true", help="Only run in declared workspaces")

    cache = parser.add_argument_group("cache")
    cache.add_argument("--cache-folder", help="Shared cache folder")
    cache.add_argument(
        "--separate-cache-folders",
        "--sep-cache",
        dest="separate_cache_folders",
        nargs="?",
        const="",
        help="Use a separate cache folder per project (optional seed)",
    )
    cache.add_argument("--force", action="store_true", help="Pass --force to the package manager")
    cache.add_argument("--force-local", action="store_true", help="Re-add file:/link: dependencies")
    cache.add_argument("--force-remote", action="store_true", help="Re-add git/url dependencies")

    watch = parser.add_argument_group("watch")
    watch.add_argument("--watch", nargs="*", help="Watch files (default: lock file) and re-run on change")
    watch.add_argument(
        "--watch-content",
        dest="watch_content_files",
        nargs="*",
        help="Like --watch, but ignore events that do not change file content",
    )
    watch.add_argument(
        "--watch-interval",
        type=float,
        help=f"Seconds between watch polls (default {DEFAULT_WATCH_INTERVAL_SEC})",
    )
    watch.add_argument("--force-on-change", action="store_true", help="Apply force flags to watch re-runs")
    return parser


def split_arguments(parser: argparse.ArgumentParser, argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """Split ``argv`` into yall arguments and package-manager arguments."""
    actions = {option: action for action in parser._actions for option in action.option_strings}
    tokens = [token for token in argv if token != "--"]
    yall_args: list[str] = []
    run_args: list[str] = []

    i = 0
    while i < len(tokens):
        token = tokens[i]
        i += 1
        if _VERBOSITY_RE.match(token):
            yall_args.append(token)
            continue
        action = actions.get(token.split("=", 1)[0]) if token.startswith("-") else None
        if action is None:
            run_args.append(token)
            continue

        yall_args.append(token)
        if "=" in token:
            continue
        nargs = action.nargs
        if nargs == 0:
            continue
        if nargs is None:
            if i < len(tokens):
                yall_args.append(tokens[i])
                i += 1
            continue
        if nargs == "?":
            if i < len(tokens) and not tokens[i].startswith("-"):
                yall_args.append(tokens[i])
                i += 1
            continue
        while i < len(tokens) and not tokens[i].startswith("-"):
            yall_args.append(tokens[i])
            i += 1
    return yall_args, run_args


def build_config(args: argparse.Namespace) -> RunConfiguration:
    """Merge config-file values and command-line flags.

    Raises:
        ConfigError: If the config file or an option value is invalid.
    """
    options: dict[str, Any] = {}
    config_path = getattr(args, "config", None)
    if config_path is not None:
        options.update(load_config_file(config_path))

    parsed = {k: v for k, v in vars(args).items() if k not in _CLI_ONLY_OPTIONS}
    if "in_folders" in parsed:
        parsed["in"] = parsed.pop("in_folders")
    watch_content_files = getattr(args, "watch_content_files", None)
    if watch_content_files is not None:
        parsed["watch"] = list(parsed.get("watch") or []) + list(watch_content_files)
        parsed["watch_content"] = True
    options.update(parsed)

    if options.get("cwd") is not None:
        options["cwd"] = Path(options["cwd"]).resolve()
    return RunConfiguration.from_options(options)


async def _run(command: str, config: RunConfiguration) -> None:
    if config.watch is not None:
        await WatchLoop(command, config).run()
    else:
        await RunCoordinator(config).run_all(command)


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point.

    Returns:
        Exit code (0 on success, 1 on failures, 130 on interrupt).
    """
    parser = build_parser()
    yall_argv, run_argv = split_arguments(parser, sys.argv[1:] if argv is None else argv)
    args = parser.parse_args(yall_argv)
    verbosity = getattr(args, "verbose", 0) or 0
    logs.configure_logging(verbosity, quiet=getattr(args, "quiet", False))

    try:
        config = build_config(args)
        command = shlex.join(run_argv)
        asyncio.run(_run(command, config))
    except KeyboardInterrupt:
        logs.warn(logger, "Interrupted")
        return 130
    except YallError as exc:
        logs.error(logger, "%s", exc)
        return 1
    except Exception as exc:  # noqa: BLE001 - report unexpected failures as exit code 1
        logs.error(logger, "Error: %s", exc)
        if verbosity >= 2:
            import traceback

            traceback.print_exc()
        return 1
    return 0
