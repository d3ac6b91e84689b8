"""Command-line entry point for leyline-cache."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from leyline_cache.cache.file_cache import open_file_cache
from leyline_cache.cache.stats import CacheStats
from leyline_cache.commands.builtin import CommandServices, register_builtin_commands
from leyline_cache.commands.registry import CommandDispatchError, CommandRegistry, CommandResult
from leyline_cache.config import CacheConfig, CliOverrides, load_effective_config
from leyline_cache.discovery.metadata_cache import MetadataCache
from leyline_cache.errors import ConfigError, LeylineError, format_error
from leyline_cache.logging.events import JsonlEventLogger, stderr_echo
from leyline_cache.sync.comparator import FileComparator
from leyline_cache.sync.git import SubprocessGitProvider
from leyline_cache.sync.state import SyncState

EVENTS_FILENAME = "events.jsonl"


def build_arg_parser() -> argparse.ArgumentParser:
    """Build argument parser for every command."""
    parser = argparse.ArgumentParser(prog="leyline-cache")
    parser.add_argument("--cache-dir", required=False, default=None)
    parser.add_argument("--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser("sync", help="Sync leyline documents into docs/leyline.")
    _add_fetch_options(sync)
    sync.add_argument("--force-git", action="store_true")
    sync.add_argument("--no-cache", action="store_true")
    sync.add_argument("--stats", action="store_true")

    update = subparsers.add_parser(
        "update", help="Preview upstream changes, detect conflicts and apply when safe."
    )
    _add_fetch_options(update)

    for name, help_text in (
        ("status", "Compare the working copy against the last sync."),
        ("diff", "Show unified diffs of local changes since the last sync."),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("path", nargs="?", default=".")
        command.add_argument("--target", required=False, default=None)
        command.add_argument("--stats", action="store_true")
        command.add_argument("--json", action="store_true")

    categories = subparsers.add_parser("categories", help="List document categories.")
    _add_discovery_options(categories)

    show = subparsers.add_parser("show", help="List documents in a category.")
    show.add_argument("category")
    _add_discovery_options(show)

    search = subparsers.add_parser("search", help="Search document metadata.")
    search.add_argument("query")
    _add_discovery_options(search)
    return parser


def build_services(config: CacheConfig, verbose: bool = False) -> CommandServices:
    """Wire cache, sync and discovery collaborators for one invocation."""
    logger = JsonlEventLogger(config.cache_dir / EVENTS_FILENAME, echo=stderr_echo(verbose))
    stats = CacheStats()
    file_cache = open_file_cache(
        config.cache_dir,
        stats,
        logger=logger,
        max_bytes=config.cache.max_bytes,
        ttl_seconds=config.cache.ttl_seconds,
        max_attempts=config.retry.max_attempts,
        base_delay_seconds=config.retry.base_delay_ms / 1000,
    )
    metadata = MetadataCache(
        config.target_dir,
        file_cache=file_cache,
        cache_dir=config.cache_dir if file_cache.enabled else None,
        workers=config.discovery.warm_workers,
        default_limit=config.discovery.default_limit,
        logger=logger,
    )
    return CommandServices(
        config=config,
        stats=stats,
        file_cache=file_cache,
        sync_state=SyncState(config.cache_dir),
        metadata=metadata,
        provider_factory=SubprocessGitProvider,
        comparator=FileComparator(),
        logger=logger,
    )


def main(argv: list[str] | None = None) -> int:
    """Entrypoint for the leyline-cache command line."""
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    raw_categories = getattr(args, "categories", None)
    overrides = CliOverrides(
        cache_dir=Path(args.cache_dir) if args.cache_dir is not None else None,
        remote=getattr(args, "remote", None),
        ref=getattr(args, "ref", None),
        categories=(raw_categories,) if raw_categories is not None else None,
        target=getattr(args, "target", None),
    )
    try:
        config = load_effective_config(Path(args.path), overrides=overrides)
    except ConfigError as error:
        print(f"Error: {error}", file=sys.stderr)
        return 1

    services = build_services(config, verbose=args.verbose)
    registry = CommandRegistry()
    register_builtin_commands(registry, services)
    try:
        result = registry.dispatch(args.command, _arguments(args))
    except CommandDispatchError as error:
        print(f"Error: {error.message}", file=sys.stderr)
        return 2
    except LeylineError as error:
        result = CommandResult(
            exit_code=1,
            payload={"ok": False, "error": error.to_dict()},
            text=format_error(error),
        )
    finally:
        services.metadata.close()
    _emit(result, as_json=getattr(args, "json", False))
    return result.exit_code


def _add_fetch_options(command: argparse.ArgumentParser) -> None:
    command.add_argument("path", nargs="?", default=".")
    command.add_argument("-c", "--categories", required=False, default=None)
    command.add_argument("--ref", required=False, default=None)
    command.add_argument("--remote", required=False, default=None)
    command.add_argument("--target", required=False, default=None)
    command.add_argument("-f", "--force", action="store_true")
    command.add_argument("-n", "--dry-run", action="store_true")
    command.add_argument("--json", action="store_true")


def _add_discovery_options(command: argparse.ArgumentParser) -> None:
    command.add_argument("--path", dest="path", default=".")
    command.add_argument("--target", required=False, default=None)
    command.add_argument("--limit", type=int, required=False, default=None)
    command.add_argument("--stats", action="store_true")
    command.add_argument("--json", action="store_true")


def _arguments(args: argparse.Namespace) -> dict[str, object]:
    arguments: dict[str, object] = {
        "stats": getattr(args, "stats", False),
        "verbose": args.verbose,
    }
    for key in ("query", "category", "limit"):
        value = getattr(args, key, None)
        if value is not None:
            arguments[key] = value
    for flag in ("force", "dry_run", "force_git", "no_cache"):
        if getattr(args, flag, False):
            arguments[flag] = True
    return arguments


def _emit(result: CommandResult, as_json: bool) -> None:
    if as_json:
        sys.stdout.write(json.dumps(result.payload, indent=2, sort_keys=True) + "\n")
        return
    stream = sys.stdout if result.exit_code == 0 else sys.stderr
    if result.text:
        stream.write(result.text.rstrip("\n") + "\n")


if __name__ == "__main__":
    raise SystemExit(main())
