"""FastAPI app for schema compilation and hydrated content reads."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import contextvars
import json
import logging
import time
import uuid

import anyio
import anyio.to_thread

from app.db import get_db_ms, get_db_query_log, get_db_stats, get_provider, reset_db_ms
from app.ddl_render import render_schema_sql
from app.stores import MemoryContentStore, MemoryTypeStore
from app.stores_db import DbContentStore, DbTypeStore, apply_schema
from app.template_validate import compile_templates
from hydration import HydrationEngine
from schema_compiler import CompiledSchema
from schema_errors import SchemaCompileError
from table_registry import TableRegistry
from type_registry import TypeRegistry

from sailor.canonical_json import canonical_loads


app = FastAPI(title="Sailor schema service")
logger = logging.getLogger("sailor.api")
logging.basicConfig(level=logging.INFO)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
REQ_SLOW_MS = float(os.getenv("SAILOR_REQ_SLOW_MS", "250"))
TEMPLATES_PATH = os.getenv("SAILOR_TEMPLATES_PATH", "templates.json")
CONTENT_KINDS = ("collection", "global", "block")

if USE_DB:
    type_store = DbTypeStore()
    content_store = DbContentStore()
else:
    type_store = MemoryTypeStore()
    content_store = MemoryContentStore()

type_registry = TypeRegistry(type_store)
_state: dict[str, Any] = {
    "compiled": None,
    "engine": HydrationEngine(content_store, type_registry),
}


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_ms()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    db_ms = get_db_ms()
    db_stats = get_db_stats()
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s request_id=%s total_ms=%.1f db_ms=%.1f db_q=%s db_acquire_ms=%.1f",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        get_request_id(),
        total_ms,
        db_ms,
        db_stats.get("queries", 0),
        db_stats.get("acquire_ms", 0.0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f db_ms=%.1f queries=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            db_ms,
            get_db_query_log(),
        )
    return response


_REQUEST_ID: contextvars.ContextVar[str | None] = contextvars.ContextVar("sailor_request_id", default=None)


def get_request_id() -> str | None:
    return _REQUEST_ID.get()


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        token = _REQUEST_ID.set(request_id)
        try:
            response = await call_next(request)
        finally:
            _REQUEST_ID.reset(token)
        response.headers["x-request-id"] = request_id
        return response


_CORS_ORIGINS = {o.strip() for o in os.getenv("SAILOR_CORS_ORIGINS", "").split(",") if o.strip()}

app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=r"http://localhost:\d+|http://127\.0\.0\.1:\d+",
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestContextMiddleware)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _issues_response(errors: list, warnings: list | None = None, status: int = 400) -> JSONResponse:
    body = {"ok": False, "errors": errors, "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _compile_error_response(exc: SchemaCompileError) -> JSONResponse:
    if exc.issues:
        return _issues_response(exc.issues)
    return _error_response(exc.code, exc.message, exc.path)


def _engine() -> HydrationEngine:
    return _state["engine"]


def _apply_compiled(compiled: CompiledSchema) -> dict:
    """Create tables for ``compiled`` and replace the stored type documents."""
    if USE_DB:
        statements = apply_schema(None, compiled)
    else:
        content_store.create_tables(compiled.table_names())
        statements = 0
    synced = type_store.sync_types(compiled.type_documents)
    type_registry.invalidate()
    _state["compiled"] = compiled
    _state["engine"] = HydrationEngine(content_store, type_registry, TableRegistry.from_compiled(compiled))
    return {"statements": statements, **synced}


def _bootstrap_templates(path: str) -> None:
    templates_file = Path(path)
    if not templates_file.is_absolute():
        templates_file = Path.cwd() / templates_file
    if not templates_file.exists():
        logger.info("templates_missing path=%s", templates_file)
        return
    try:
        raw = json.loads(templates_file.read_text(encoding="utf-8"))
        compiled, warnings = compile_templates(raw)
    except (ValueError, SchemaCompileError) as exc:
        logger.error("templates_invalid path=%s error=%s", templates_file, exc)
        return
    result = _apply_compiled(compiled)
    logger.info("templates_loaded path=%s result=%s warnings=%s", templates_file, result, len(warnings))


_bootstrap_templates(TEMPLATES_PATH)


@app.get("/health")
async def health() -> dict:
    return {"ok": True, "db": USE_DB, "provider": get_provider() if USE_DB else "memory"}


@app.post("/schema/compile")
async def compile_schema(request: Request) -> JSONResponse:
    try:
        body = await request.json()
    except ValueError:
        return _error_response("BODY_INVALID", "request body must be JSON", None)
    if not isinstance(body, dict):
        return _error_response("BODY_INVALID", "request body must be an object", None)

    templates = {key: body.get(key) or {} for key in ("collections", "globals", "blocks")}
    dialect = body.get("dialect") or get_provider()
    strict = body.get("strict")
    try:
        compiled, warnings = await anyio.to_thread.run_sync(compile_templates, templates, strict)
    except SchemaCompileError as exc:
        return _compile_error_response(exc)

    payload: dict = {
        "schema": compiled.to_document(),
        "sql": render_schema_sql(compiled, dialect),
        "summary": compiled.summary(),
        "applied": None,
    }
    if body.get("apply"):
        payload["applied"] = await anyio.to_thread.run_sync(_apply_compiled, compiled)
    return _ok_response(payload, warnings)


@app.get("/types/{kind}/{slug}")
async def get_type(kind: str, slug: str) -> JSONResponse:
    if kind not in CONTENT_KINDS:
        return _error_response("KIND_INVALID", f"unknown content kind: {kind}", "kind")
    doc = await anyio.to_thread.run_sync(type_registry.get_type, kind, slug)
    if not doc:
        return _error_response("TYPE_NOT_FOUND", "type not found", f"{kind}.{slug}", status=404)
    try:
        doc["schema"] = canonical_loads(doc.get("schema"))
    except ValueError:
        return _ok_response({"type": doc}, [{"code": "TYPE_SCHEMA_MALFORMED", "message": "stored schema is not valid JSON", "path": "schema", "detail": None}])
    return _ok_response({"type": doc})


@app.post("/types/invalidate")
async def invalidate_types(request: Request) -> JSONResponse:
    body: dict = {}
    raw = await request.body()
    if raw:
        try:
            body = json.loads(raw)
        except ValueError:
            return _error_response("BODY_INVALID", "request body must be JSON", None)
    kind = body.get("kind") if isinstance(body, dict) else None
    slug = body.get("slug") if isinstance(body, dict) else None
    count = type_registry.invalidate(kind, slug)
    return _ok_response({"invalidated": count})


def _full_flag(request: Request) -> bool:
    return request.query_params.get("full", "").strip().lower() in ("1", "true", "yes")


@app.get("/content/{kind}/{slug}")
async def list_content(kind: str, slug: str, request: Request) -> JSONResponse:
    if kind not in CONTENT_KINDS:
        return _error_response("KIND_INVALID", f"unknown content kind: {kind}", "kind")
    doc = await anyio.to_thread.run_sync(type_registry.get_type, kind, slug)
    if not doc:
        return _error_response("TYPE_NOT_FOUND", "type not found", f"{kind}.{slug}", status=404)
    items = await _engine().list(kind, slug, _full_flag(request))
    return _ok_response({"items": items, "count": len(items)})


@app.get("/content/{kind}/{slug}/{row_id}")
async def get_content(kind: str, slug: str, row_id: str, request: Request) -> JSONResponse:
    if kind not in CONTENT_KINDS:
        return _error_response("KIND_INVALID", f"unknown content kind: {kind}", "kind")
    item = await _engine().load(kind, slug, row_id, _full_flag(request))
    if item is None:
        return _error_response("CONTENT_NOT_FOUND", "content not found", f"{kind}.{slug}.{row_id}", status=404)
    return _ok_response({"item": item})
