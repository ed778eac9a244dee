from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Mount, Route
from starlette.staticfiles import StaticFiles

from ..domain.models import FileInput
from ..logging import get_logger
from ..paths import find_project_root
from ..pipeline import CommandResult, CustomerPipeline, FailureKind


LOG = get_logger("frontend")

DEFAULT_STATIC_SUBDIR = os.path.join("frontend", "customer-dashboard", "dist")

_FAILURE_STATUS = {
    FailureKind.EXTRACTION: 502,
    FailureKind.NO_RECORDS: 422,
    FailureKind.PERSISTENCE: 500,
    FailureKind.CLOUD_READ: 503,
    FailureKind.CLOUD_WRITE: 503,
    FailureKind.IMPORT_PARSE: 400,
}


def _result_response(result: CommandResult, *, include_customers: bool = True, status_code: int = 200) -> JSONResponse:
    body: Dict[str, Any] = result.to_dict()
    if include_customers:
        body["customers"] = [c.to_dict() for c in result.customers]
    if not result.ok:
        body["detail"] = result.message
        return JSONResponse(body, status_code=_FAILURE_STATUS.get(result.failure, 500))
    return JSONResponse(body, status_code=status_code)


def _parse_files(payload: Any) -> List[FileInput]:
    if not isinstance(payload, dict) or not isinstance(payload.get("files"), list):
        raise HTTPException(status_code=400, detail="Body must be an object with a 'files' list")
    files: List[FileInput] = []
    for index, item in enumerate(payload["files"]):
        if not isinstance(item, dict):
            raise HTTPException(status_code=400, detail=f"files[{index}] must be an object")
        kind = item.get("kind")
        content = item.get("content")
        if kind not in FileInput.KINDS or not isinstance(content, str) or not content:
            raise HTTPException(status_code=400, detail=f"files[{index}] needs kind image|csv and non-empty content")
        files.append(
            FileInput(
                name=str(item.get("name") or f"upload-{index + 1}"),
                kind=kind,
                content=content,
                mime_type=item.get("mimeType"),
            )
        )
    return files


def create_app(
    pipeline: CustomerPipeline,
    root_dir: Optional[str] = None,
    *,
    static_dir: Optional[str] = None,
    allow_origins: Optional[List[str]] = None,
    serve_static: bool = True,
) -> Starlette:
    """Create a Starlette app exposing the customer command surface and optional dashboard build."""

    project_root = find_project_root(root_dir)

    resolved_static_dir: Optional[str] = None
    if serve_static:
        candidate = os.path.abspath(os.path.join(project_root, static_dir or DEFAULT_STATIC_SUBDIR))
        if os.path.isdir(candidate):
            resolved_static_dir = candidate
            LOG.info("Serving static dashboard from %s", resolved_static_dir)
        else:
            LOG.warning("Dashboard build not found at %s; API will run without static assets.", candidate)
    else:
        LOG.info("Static dashboard serving disabled (API only mode).")

    @asynccontextmanager
    async def lifespan(_: Starlette) -> AsyncIterator[None]:
        result = await pipeline.load_initial()
        LOG.info("Initial load: %d customer(s) from %s", len(result.customers), result.source or "local")
        yield
        task = pipeline.sync_task
        if task is not None and not task.done():
            LOG.info("Waiting for in-flight cloud sync before shutdown")
            await task

    async def health(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "status": "ok",
                "db_path": pipeline.local_store.db_path,
                "cloud": pipeline.cloud_status.value,
                "extraction": pipeline.extractor is not None,
            }
        )

    async def customers(_: Request) -> JSONResponse:
        items = [c.to_dict() for c in pipeline.customers]
        return JSONResponse({"items": items, "total": len(items)})

    async def stats(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "cities": [s.to_dict() for s in pipeline.city_stats()],
                "summary": pipeline.summary(),
            }
        )

    async def import_files(request: Request) -> JSONResponse:
        try:
            payload = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Body must be JSON") from exc
        files = _parse_files(payload)
        result = await pipeline.import_files(files)
        return _result_response(result)

    async def export(_: Request) -> Response:
        result = await pipeline.export_snapshot()
        if not result.ok or result.export is None:
            return _result_response(result, include_customers=False)
        return Response(
            result.export.content,
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{result.export.filename}"'},
        )

    async def restore_backup(request: Request) -> JSONResponse:
        body = await request.body()
        result = await pipeline.import_backup(body)
        return _result_response(result)

    async def trigger_sync(_: Request) -> JSONResponse:
        if not pipeline.cloud_enabled:
            raise HTTPException(status_code=409, detail="Cloud sync is not configured")
        pipeline.trigger_cloud_sync()
        return JSONResponse({"status": pipeline.cloud_status.value}, status_code=202)

    async def sync_status(_: Request) -> JSONResponse:
        error = pipeline.last_cloud_error
        return JSONResponse(
            {
                "enabled": pipeline.cloud_enabled,
                "status": pipeline.cloud_status.value,
                "errorType": error.value if error else None,
            }
        )

    async def clear(_: Request) -> JSONResponse:
        result = await pipeline.clear_all()
        return _result_response(result, include_customers=False)

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/customers", customers, methods=["GET"]),
        Route("/api/customers", clear, methods=["DELETE"]),
        Route("/api/stats", stats, methods=["GET"]),
        Route("/api/import", import_files, methods=["POST"]),
        Route("/api/export", export, methods=["GET"]),
        Route("/api/backup", restore_backup, methods=["POST"]),
        Route("/api/sync", trigger_sync, methods=["POST"]),
        Route("/api/sync", sync_status, methods=["GET"]),
    ]

    if resolved_static_dir:
        routes.append(Mount("/", app=StaticFiles(directory=resolved_static_dir, html=True), name="dashboard"))
    else:
        async def api_only(_: Request) -> JSONResponse:
            detail = (
                "Dashboard build missing. Build the frontend under frontend/customer-dashboard/."
                if serve_static
                else "Customer API is running. Static dashboard disabled (serve_static=False)."
            )
            return JSONResponse({"detail": detail}, status_code=503 if serve_static else 200)

        routes.append(Route("/", api_only, methods=["GET"]))
        routes.append(Route("/{path:path}", api_only, methods=["GET"]))

    app = Starlette(debug=False, routes=routes, lifespan=lifespan)

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if "*" in origins else origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


__all__ = ["create_app"]
