"""Built-in commands: sync, update, status, diff, categories, show and search."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass

from leyline_cache.cache.file_cache import FileCache
from leyline_cache.cache.handler import CacheErrorHandler
from leyline_cache.cache.stats import CacheStats
from leyline_cache.commands.registry import (
    CommandDispatchError,
    CommandHandler,
    CommandRegistry,
    CommandResult,
)
from leyline_cache.config import CacheConfig, normalize_categories
from leyline_cache.discovery.metadata_cache import MetadataCache
from leyline_cache.errors import (
    ConflictDetectedError,
    InvalidManifestError,
    LeylineError,
    format_error,
)
from leyline_cache.layout import sparse_paths_for
from leyline_cache.logging.events import LEVEL_WARNING, JsonlEventLogger
from leyline_cache.sync.comparator import FileComparator
from leyline_cache.sync.engine import GitSyncEngine
from leyline_cache.sync.git import GitProvider
from leyline_cache.sync.models import (
    STATUS_ADDED,
    STATUS_MODIFIED,
    STATUS_REMOVED,
    STATUS_UNMODIFIED,
    FileDelta,
    SyncManifest,
)
from leyline_cache.sync.state import SyncState

STATS_FILENAME = "stats.json"

_STATUS_MARKERS = {
    STATUS_ADDED: "A",
    STATUS_MODIFIED: "M",
    STATUS_REMOVED: "D",
}


@dataclass(slots=True)
class CommandServices:
    """Collaborators shared by the built-in commands of one invocation."""

    config: CacheConfig
    stats: CacheStats
    file_cache: FileCache
    sync_state: SyncState
    metadata: MetadataCache
    provider_factory: Callable[[str], GitProvider]
    comparator: FileComparator
    logger: JsonlEventLogger | None = None


def register_builtin_commands(registry: CommandRegistry, services: CommandServices) -> None:
    """Register every built-in command against shared services."""
    registry.register("sync", _sync_handler(services))
    registry.register("update", _update_handler(services))
    registry.register("status", _status_handler(services))
    registry.register("diff", _diff_handler(services))
    registry.register("categories", _categories_handler(services))
    registry.register("show", _show_handler(services))
    registry.register("search", _search_handler(services))


def error_result(error: LeylineError) -> CommandResult:
    """Render a failed command as exit code 1 with recovery suggestions."""
    return CommandResult(
        exit_code=1,
        payload={"ok": False, "error": error.to_dict()},
        text=format_error(error),
    )


def _sync_handler(services: CommandServices) -> CommandHandler:
    def handler(arguments: dict[str, object]) -> CommandResult:
        config = services.config
        categories = _categories_argument(arguments) or config.sync.categories
        ref = _optional_string(arguments, "ref") or config.sync.ref
        dry_run = arguments.get("dry_run") is True
        bypass_cache = arguments.get("force_git") is True or arguments.get("no_cache") is True
        try:
            result = _engine(services, ref).sync(
                categories,
                ref=ref,
                force_git=bypass_cache,
                force=arguments.get("force") is True,
                dry_run=dry_run,
            )
        except LeylineError as error:
            return error_result(error)
        if not dry_run:
            _save_stats(services)
            _evict_stale(services)

        payload = {"ok": True, "target": str(config.target_dir), **result.to_dict()}
        if result.dry_run:
            lines = [
                f"Dry run: {len(result.written)} files would be written to {config.target_dir} "
                f"at {result.ref}; no changes were made."
            ]
        elif result.git_operations_skipped:
            lines = [
                f"Serving from cache: {len(result.entries)} files already synced "
                f"at {result.ref} (git operations skipped)."
            ]
        else:
            lines = [
                f"Sync completed: {len(result.written)} files written to {config.target_dir} "
                f"at {result.ref}."
            ]
        if result.category_counts:
            counts = ", ".join(f"{name}: {count}" for name, count in result.category_counts.items())
            lines.append(f"Categories: {counts}")
        if result.skipped:
            label = "Would keep" if result.dry_run else "Kept"
            lines.append(
                f"{label} local changes in {len(result.skipped)} files "
                "(use --force to overwrite):"
            )
            lines.extend(f"  - {path}" for path in result.skipped)
        if result.failures:
            lines.append(f"Skipped {len(result.failures)} files:")
            lines.extend(f"  - {item.path}: {item.reason}" for item in result.failures)
        if arguments.get("stats") is True:
            payload["cache"] = _cache_report(services)
            lines.extend(["", _stats_text(services)])
        return CommandResult(exit_code=0, payload=payload, text="\n".join(lines))

    return handler


def _update_handler(services: CommandServices) -> CommandHandler:
    def handler(arguments: dict[str, object]) -> CommandResult:
        config = services.config
        categories = _categories_argument(arguments) or config.sync.categories
        ref = _optional_string(arguments, "ref") or config.sync.ref
        dry_run = arguments.get("dry_run") is True
        force = arguments.get("force") is True
        try:
            plan = _engine(services, ref).update(
                categories, ref=ref, force=force, dry_run=dry_run
            )
        except LeylineError as error:
            return error_result(error)

        lines = [f"Update preview for {config.target_dir} at {plan.ref}"]
        if not plan.baseline_exists:
            lines.append("No previous sync recorded; every upstream file is new.")
        lines.append(
            f"Added: {len(plan.added)}  Modified: {len(plan.modified)}  "
            f"Removed upstream: {len(plan.removed)}  Conflicts: {len(plan.conflicts)}"
        )
        for marker, paths in (("A", plan.added), ("M", plan.modified), ("D", plan.removed)):
            lines.extend(f"  {marker} {path}" for path in paths)
        for conflict in plan.conflicts:
            lines.append(f"  ! {conflict.path} ({conflict.kind})")
            lines.extend(f"      - {option}" for option in conflict.resolution_options())

        if plan.conflicted and not force and not dry_run:
            conflict_error = ConflictDetectedError(
                f"{len(plan.conflicts)} conflicts detected; nothing was changed.",
                conflicts=tuple(
                    {"path": item.path, "kind": item.kind} for item in plan.conflicts
                ),
            )
            failed = error_result(conflict_error)
            return CommandResult(
                exit_code=1,
                payload={**failed.payload, "plan": plan.to_dict()},
                text="\n".join([*lines, "", failed.text]),
            )

        payload: dict[str, object] = {
            "ok": True,
            "target": str(config.target_dir),
            "plan": plan.to_dict(),
        }
        if plan.result is not None:
            _save_stats(services)
            _evict_stale(services)
            payload["sync"] = plan.result.to_dict()
            lines.append(
                f"Update applied: {len(plan.result.written)} files written, "
                f"{len(plan.result.skipped)} local edits kept."
            )
        elif dry_run:
            lines.append("Dry run complete; no changes were made.")
        return CommandResult(exit_code=0, payload=payload, text="\n".join(lines))

    return handler


def _engine(services: CommandServices, ref: str) -> GitSyncEngine:
    config = services.config
    return GitSyncEngine(
        provider=services.provider_factory(config.sync.remote),
        file_cache=services.file_cache,
        sync_state=services.sync_state,
        target_dir=config.target_dir,
        comparator=services.comparator,
        handler=CacheErrorHandler(
            config.cache_dir,
            logger=services.logger,
            max_attempts=config.retry.max_attempts,
            base_delay_seconds=config.retry.base_delay_ms / 1000,
        ),
        logger=services.logger,
        ref=ref,
        cache_threshold=config.sync.cache_threshold,
        workers=config.sync.workers,
        listener=services.metadata.invalidate_paths,
    )


def _status_handler(services: CommandServices) -> CommandHandler:
    def handler(arguments: dict[str, object]) -> CommandResult:
        manifest, warning = _load_manifest(services)
        deltas = _deltas(services, manifest)
        payload = _status_payload(services, manifest, deltas)
        if warning is not None:
            payload["warning"] = warning
        lines = _status_lines(services, manifest, deltas, warning)
        if arguments.get("stats") is True:
            payload["cache"] = _cache_report(services)
            lines.extend(["", _stats_text(services)])
        return CommandResult(exit_code=0, payload=payload, text="\n".join(lines))

    return handler


def _diff_handler(services: CommandServices) -> CommandHandler:
    def handler(arguments: dict[str, object]) -> CommandResult:
        manifest, warning = _load_manifest(services)
        deltas = _deltas(services, manifest)
        payload = _status_payload(services, manifest, deltas)
        if warning is not None:
            payload["warning"] = warning
        lines = _status_lines(services, manifest, deltas, warning)
        diffs: list[dict[str, object]] = []
        baseline_entries = manifest.entries if manifest is not None else {}
        target = services.config.target_dir
        for delta in deltas:
            if delta.status == STATUS_UNMODIFIED:
                continue
            baseline: bytes | None = None
            baseline_missing = False
            digest = baseline_entries.get(delta.path)
            if digest is not None:
                baseline = services.file_cache.get(digest)
                baseline_missing = baseline is None
            current: bytes | None = None
            if delta.status != STATUS_REMOVED:
                try:
                    current = (target / delta.path).read_bytes()
                except OSError:
                    current = None
            text = services.comparator.content_diff(delta.path, baseline, current)
            diffs.append(
                {
                    "path": delta.path,
                    "status": delta.status,
                    "baseline_cached": not baseline_missing,
                    "diff": text,
                }
            )
            lines.append("")
            if baseline_missing:
                lines.append(f"{delta.path}: synced version is no longer cached; run sync.")
                continue
            lines.append(text.rstrip("\n"))
        payload["diffs"] = diffs
        return CommandResult(exit_code=0, payload=payload, text="\n".join(lines))

    return handler


def _categories_handler(services: CommandServices) -> CommandHandler:
    def handler(arguments: dict[str, object]) -> CommandResult:
        metadata = services.metadata
        categories = [
            {"name": name, "document_count": len(metadata.documents_in(name, wait=True))}
            for name in metadata.list_categories(wait=True)
        ]
        payload: dict[str, object] = {"ok": True, "categories": categories}
        if categories:
            lines = [f"Available categories ({len(categories)}):"]
            lines.extend(
                f"  {item['name']} ({item['document_count']} documents)" for item in categories
            )
        else:
            lines = ["No categories found. Run sync first."]
        _append_performance(arguments, services, payload, lines)
        return CommandResult(exit_code=0, payload=payload, text="\n".join(lines))

    return handler


def _show_handler(services: CommandServices) -> CommandHandler:
    def handler(arguments: dict[str, object]) -> CommandResult:
        category = arguments.get("category")
        if not isinstance(category, str) or not category.strip():
            raise CommandDispatchError(
                code="INVALID_PARAMS", message="show category must be a non-empty string."
            )
        name = category.strip().lower()
        metadata = services.metadata
        documents = metadata.documents_in(name, wait=True)
        limit = _limit_argument(arguments)
        if limit is not None:
            documents = documents[:limit]
        if not documents:
            available = metadata.list_categories()
            payload: dict[str, object] = {
                "ok": False,
                "category": name,
                "available_categories": available,
            }
            text = f"No documents found for category '{name}'."
            if available:
                text += f"\nAvailable categories: {', '.join(available)}"
            return CommandResult(exit_code=1, payload=payload, text=text)
        payload = {
            "ok": True,
            "category": name,
            "documents": [item.to_dict() for item in documents],
        }
        lines = [f"Documents in '{name}' ({len(documents)}):"]
        for item in documents:
            lines.append(f"  {item.id}: {item.title}")
            if arguments.get("verbose") is True and item.preview:
                lines.append(f"    {item.preview}")
        _append_performance(arguments, services, payload, lines)
        return CommandResult(exit_code=0, payload=payload, text="\n".join(lines))

    return handler


def _search_handler(services: CommandServices) -> CommandHandler:
    def handler(arguments: dict[str, object]) -> CommandResult:
        query = arguments.get("query")
        if not isinstance(query, str) or not query.strip():
            raise CommandDispatchError(
                code="INVALID_PARAMS", message="search query must be a non-empty string."
            )
        limit = _limit_argument(arguments) or services.config.discovery.default_limit
        metadata = services.metadata
        results = metadata.search(query, limit=limit, wait=True)
        suggestions = [] if results else metadata.suggest_corrections(query)
        payload: dict[str, object] = {
            "ok": True,
            "query": query,
            "results": [item.to_dict() for item in results],
            "suggestions": suggestions,
        }
        if results:
            lines = [f"Search results for '{query}' ({len(results)}):"]
            for position, item in enumerate(results, start=1):
                document = item.document
                lines.append(
                    f"  {position}. {document.title} [{document.category}] "
                    f"{document.path} (score {item.score})"
                )
                if document.preview:
                    lines.append(f"     {document.preview}")
        else:
            lines = [f"No results found for '{query}'."]
            if suggestions:
                lines.append(f"Did you mean: {', '.join(suggestions)}?")
        _append_performance(arguments, services, payload, lines)
        return CommandResult(exit_code=0, payload=payload, text="\n".join(lines))

    return handler


def _save_stats(services: CommandServices) -> None:
    if not services.file_cache.enabled:
        return
    path = services.config.cache_dir / STATS_FILENAME
    try:
        services.stats.save(path)
    except OSError as error:
        if services.logger is not None:
            services.logger.log(
                event="stats_persist_failed",
                message=f"Cache statistics not saved: {error}",
                level=LEVEL_WARNING,
                operation="sync",
                metadata={"path": str(path)},
            )


def _evict_stale(services: CommandServices) -> None:
    if not services.file_cache.enabled:
        return
    try:
        report = services.file_cache.store.evict_zero_byte_and_stale()
    except LeylineError as error:
        if services.logger is not None:
            services.logger.log(
                event="cache_eviction_failed",
                message=f"Cache maintenance skipped: {error.reason}",
                level=LEVEL_WARNING,
                operation="evict",
                category=error.category,
                metadata={"path": error.path or ""},
            )
        return
    removed = report.zero_byte_removed + report.temp_removed + report.stale_removed
    if removed and services.logger is not None:
        services.logger.log(
            event="cache_evicted",
            message=f"Removed {removed} cache files.",
            operation="evict",
            metadata={"count": removed, "size": report.bytes_freed},
        )


def _load_manifest(services: CommandServices) -> tuple[SyncManifest | None, str | None]:
    try:
        return services.sync_state.load(), None
    except InvalidManifestError as error:
        return None, f"Sync state is unreadable and was ignored: {error.reason}"


def _deltas(services: CommandServices, manifest: SyncManifest | None) -> list[FileDelta]:
    current = services.comparator.scan_tree(services.config.target_dir)
    return services.comparator.diff(current, manifest)


def _status_payload(
    services: CommandServices,
    manifest: SyncManifest | None,
    deltas: list[FileDelta],
) -> dict[str, object]:
    return {
        "ok": True,
        "target": str(services.config.target_dir),
        "synced_at": manifest.synced_at if manifest is not None else None,
        "categories": list(manifest.categories) if manifest is not None else [],
        "summary": services.comparator.summarize(deltas),
        "changes": [
            {"path": delta.path, "status": delta.status}
            for delta in deltas
            if delta.status != STATUS_UNMODIFIED
        ],
    }


def _status_lines(
    services: CommandServices,
    manifest: SyncManifest | None,
    deltas: list[FileDelta],
    warning: str | None,
) -> list[str]:
    lines = [f"Leyline status for {services.config.target_dir}"]
    if warning is not None:
        lines.append(f"Warning: {warning}")
    if manifest is None:
        lines.append("No sync recorded yet.")
    else:
        categories = ", ".join(manifest.categories) or "core only"
        lines.append(f"Last sync: {manifest.synced_at} (categories: {categories})")
    summary = services.comparator.summarize(deltas)
    lines.append(
        f"Unmodified: {summary[STATUS_UNMODIFIED]}  Modified: {summary[STATUS_MODIFIED]}  "
        f"Added: {summary[STATUS_ADDED]}  Removed: {summary[STATUS_REMOVED]}"
    )
    for delta in deltas:
        marker = _STATUS_MARKERS.get(delta.status)
        if marker is not None:
            lines.append(f"  {marker} {delta.path}")
    return lines


def _cache_report(services: CommandServices) -> dict[str, object]:
    handler = CacheErrorHandler(services.config.cache_dir)
    return {
        "stats": asdict(services.stats.snapshot()),
        "directory": services.file_cache.store.directory_stats(),
        "health_issues": handler.check_cache_health(services.config.cache.max_bytes),
        "enabled": services.file_cache.enabled,
    }


def _stats_text(services: CommandServices) -> str:
    text = services.stats.format_stats(services.file_cache.store.directory_stats())
    handler = CacheErrorHandler(services.config.cache_dir)
    issues = handler.check_cache_health(services.config.cache.max_bytes)
    if issues:
        text += "\n\nCache Health:"
        for issue in issues:
            text += f"\n  {issue['type']}: {issue['path']}"
    return text


def _append_performance(
    arguments: dict[str, object],
    services: CommandServices,
    payload: dict[str, object],
    lines: list[str],
) -> None:
    if arguments.get("stats") is not True:
        return
    performance = services.metadata.performance_stats()
    payload["performance"] = performance
    lines.extend(
        [
            "",
            "Discovery Performance:",
            f"  Documents: {performance['document_count']}",
            f"  Categories: {performance['category_count']}",
            f"  Metadata hit ratio: {float(performance['hit_ratio']) * 100:.1f}%",
        ]
    )
    operations = performance["operations"]
    if isinstance(operations, dict):
        for name, timing in operations.items():
            lines.append(
                f"  {name}: {timing['count']} calls, avg {timing['avg_ms']:.3f} ms"
            )


def _categories_argument(arguments: dict[str, object]) -> tuple[str, ...]:
    value = arguments.get("categories")
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
        raise CommandDispatchError(
            code="INVALID_PARAMS", message="categories must be a list of strings."
        )
    categories = normalize_categories(list(value))
    try:
        sparse_paths_for(categories)
    except ValueError as error:
        raise CommandDispatchError(code="INVALID_PARAMS", message=str(error)) from error
    return categories


def _limit_argument(arguments: dict[str, object]) -> int | None:
    value = arguments.get("limit")
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise CommandDispatchError(code="INVALID_PARAMS", message="limit must be >= 1.")
    return value


def _optional_string(arguments: dict[str, object], key: str) -> str | None:
    value = arguments.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise CommandDispatchError(
            code="INVALID_PARAMS", message=f"{key} must be a non-empty string."
        )
    return value.strip()
