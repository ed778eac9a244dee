from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import List, Sequence

from ..config import load_settings
from ..domain.models import FileInput
from ..gateways.files import list_input_paths, load_file_input
from ..logging import get_logger
from ..paths import expand_abs
from ..pipeline import CommandResult, CustomerPipeline, ImportProgress, build_pipeline

LOG = get_logger("cli-main")


def _collect_inputs(paths: Sequence[str]) -> List[FileInput]:
    files: List[FileInput] = []
    for raw in paths:
        path = expand_abs(raw)
        candidates = list_input_paths(path) if os.path.isdir(path) else [path]
        for candidate in candidates:
            try:
                files.append(load_file_input(candidate))
            except (OSError, ValueError) as exc:
                LOG.warning("Skipping %s: %s", candidate, exc)
    return files


def _report(result: CommandResult) -> int:
    if result.ok:
        if result.message:
            LOG.info(result.message)
        if result.error_type is not None:
            LOG.warning("Cloud error type: %s", result.error_type.value)
        return 0
    LOG.error("%s (%s)", result.message, result.failure.value if result.failure else "error")
    if result.failed_files:
        LOG.error("Failed files: %s", ", ".join(result.failed_files))
    return 1


def _print_progress(progress: ImportProgress) -> None:
    LOG.info(f"Processed file {progress.current}/{progress.total} ({progress.extracted_count} record(s) so far)")


async def _run_import(pipeline: CustomerPipeline, ns: argparse.Namespace) -> int:
    files = _collect_inputs(ns.paths)
    if not files:
        LOG.error("No supported input files found (images or CSV).")
        return 2
    await pipeline.load_initial()
    result = await pipeline.import_files(files, on_progress=_print_progress)
    if pipeline.sync_task is not None:
        sync_result = await pipeline.sync_task
        _report(sync_result)
    if result.failed_files and result.ok:
        LOG.warning("Skipped file(s): %s", ", ".join(result.failed_files))
    return _report(result)


async def _run_export(pipeline: CustomerPipeline, ns: argparse.Namespace) -> int:
    await pipeline.load_initial()
    result = await pipeline.export_snapshot()
    if not result.ok or result.export is None:
        return _report(result)
    target = expand_abs(ns.output) if ns.output else os.path.abspath(result.export.filename)
    try:
        with open(target, "w", encoding="utf-8") as f:
            f.write(result.export.content)
    except OSError as exc:
        LOG.error(f"Cannot write export {target}: {exc}")
        return 2
    LOG.info(f"Exported {result.export.count} customer(s) to {target}")
    print(target)
    return 0


async def _run_restore(pipeline: CustomerPipeline, ns: argparse.Namespace) -> int:
    path = expand_abs(ns.backup)
    try:
        with open(path, "rb") as f:
            blob = f.read()
    except OSError as exc:
        LOG.error(f"Cannot read backup {path}: {exc}")
        return 2
    await pipeline.load_initial()
    return _report(await pipeline.import_backup(blob))


async def _run_sync(pipeline: CustomerPipeline, _: argparse.Namespace) -> int:
    loaded = await pipeline.load_initial()
    _report(loaded)
    return _report(await pipeline.sync_to_cloud())


async def _run_clear(pipeline: CustomerPipeline, ns: argparse.Namespace) -> int:
    if not ns.yes:
        LOG.error("Refusing to delete all customer records without --yes")
        return 2
    await pipeline.load_initial()
    return _report(await pipeline.clear_all())


async def _run_stats(pipeline: CustomerPipeline, _: argparse.Namespace) -> int:
    await pipeline.load_initial()
    out = {
        "summary": pipeline.summary(),
        "cities": [s.to_dict() for s in pipeline.city_stats()],
    }
    print(json.dumps(out, ensure_ascii=False, indent=2))
    return 0


async def _run_list(pipeline: CustomerPipeline, ns: argparse.Namespace) -> int:
    await pipeline.load_initial()
    customers = pipeline.customers
    if ns.city:
        customers = [c for c in customers if c.city == ns.city]
    for c in customers:
        print(json.dumps(c.to_dict(), ensure_ascii=False))
    return 0


def _serve(ns: argparse.Namespace) -> int:
    from ..frontend import create_app
    import uvicorn

    settings = load_settings(os.getcwd())
    if ns.policy:
        settings.extraction_policy = ns.policy
    pipeline = build_pipeline(settings, root_dir=ns.root)
    allow_origins = ns.allow_origins
    if allow_origins and len(allow_origins) == 1 and allow_origins[0] == "*":
        allow_origins = ["*"]
    app = create_app(
        pipeline,
        root_dir=ns.root or os.getcwd(),
        static_dir=ns.static_dir,
        allow_origins=allow_origins,
        serve_static=not ns.api_only,
    )
    uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
    return 0


def _async_handler(fn, *, with_extractor: bool = False):
    def run(ns: argparse.Namespace) -> int:
        settings = load_settings(os.getcwd())
        if ns.policy:
            settings.extraction_policy = ns.policy
        pipeline = build_pipeline(settings, root_dir=ns.root, with_extractor=with_extractor)
        return asyncio.run(fn(pipeline, ns))

    return run


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.debug(f"CLI invoked with arguments: {provided}")

    parser = argparse.ArgumentParser(
        prog="customer-dist",
        description="Extract customer lists from images/CSV with an LLM and keep a deduplicated customer store.",
    )
    parser.add_argument("--root", help="Project root holding var/customerdb (default: detected from cwd)")
    parser.add_argument("--policy", choices=["skip", "abort"], help="Per-file extraction failure policy")
    subparsers = parser.add_subparsers(dest="command", required=True)

    imp = subparsers.add_parser("import", help="Extract customers from images/CSV files or folders and save new ones.")
    imp.add_argument("paths", nargs="+")
    imp.set_defaults(handler=_async_handler(_run_import, with_extractor=True))

    exp = subparsers.add_parser("export", help="Write the full customer collection to a JSON backup.")
    exp.add_argument("--output", help="Target file (default: customer_data_backup_<date>.json)")
    exp.set_defaults(handler=_async_handler(_run_export))

    restore = subparsers.add_parser("restore", help="Merge a JSON backup into the collection.")
    restore.add_argument("backup")
    restore.set_defaults(handler=_async_handler(_run_restore))

    sync = subparsers.add_parser("sync", help="Upsert all customers to Firestore (requires CLOUD_SYNC=1).")
    sync.set_defaults(handler=_async_handler(_run_sync))

    clear = subparsers.add_parser("clear", help="Delete every stored customer record.")
    clear.add_argument("--yes", action="store_true", help="Confirm deletion")
    clear.set_defaults(handler=_async_handler(_run_clear))

    stats = subparsers.add_parser("stats", help="Print the per-city distribution as JSON.")
    stats.set_defaults(handler=_async_handler(_run_stats))

    lst = subparsers.add_parser("list", help="Print stored customers as JSON lines.")
    lst.add_argument("--city", help="Only customers in this exact city")
    lst.set_defaults(handler=_async_handler(_run_list))

    serve = subparsers.add_parser("serve", help="Run the dashboard API (and optional static dashboard).")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8001)
    serve.add_argument("--log-level", default="info")
    serve.add_argument("--static-dir", help="Override static dashboard directory relative to project root")
    serve.add_argument("--api-only", action="store_true", help="Serve JSON API without static dashboard")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_serve)

    args = parser.parse_args(provided)
    code = args.handler(args)
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
