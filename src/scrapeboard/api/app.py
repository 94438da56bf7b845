"""HTTP API for the dashboard, built on aiohttp.web."""

import asyncio
import functools
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import web
from dateutil import parser as date_parser

from ..core.engine import Engine
from ..foundation.config import get_config_manager
from ..foundation.errors import (
    ErrorContext, ExtractionError, FetchError, JobStateError, NotFoundError,
    ScrapeboardError, ValidationError, error_payload, handle_error,
)
from ..foundation.logging import get_logger
from ..models.common import ErrorBody, ErrorResponse, PaginatedResponse
from ..models.events import EventFilter, EventLevel
from ..models.job import JobState
from ..models.plugin import SourceType

logger = get_logger(__name__)

ENGINE_KEY = web.AppKey("engine", Engine)

_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (JobStateError, 409),
    (ExtractionError, 422),
    (FetchError, 502),
)


@dataclass
class RequestContext:
    """Per-request state handed to every handler."""
    request_id: str
    engine: Engine


def _dumps(data: Any) -> str:
    return json.dumps(data, default=str)


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


def error_response(error: BaseException, status: int, request_id: Optional[str] = None) -> web.Response:
    body = ErrorResponse(error=ErrorBody(**error_payload(error))).model_dump()
    if request_id:
        body["error"]["details"].setdefault("request_id", request_id)
    return json_response(body, status=status)


def context(request: web.Request) -> RequestContext:
    return request["context"]


# ---------------------------------------------- #
# Middleware
@web.middleware
async def context_middleware(request: web.Request, handler):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    request["context"] = RequestContext(request_id=request_id, engine=request.app[ENGINE_KEY])
    response = await handler(request)
    if not response.prepared:
        response.headers["X-Request-ID"] = request_id
    return response


@web.middleware
async def error_middleware(request: web.Request, handler):
    request_id = request["context"].request_id if "context" in request else None
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ScrapeboardError as e:
        status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(e, cls)), 500)
        if status >= 500:
            handle_error(e, ErrorContext(operation=f"api {request.method} {request.path}"))
        return error_response(e, status, request_id)
    except Exception as e:
        handle_error(e, ErrorContext(operation=f"api {request.method} {request.path}"))
        return error_response(e, 500, request_id)


# ---------------------------------------------- #
# Parameter parsing
def _int_param(request: web.Request, name: str, default: int, minimum: int = 1,
               maximum: Optional[int] = None) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"Query parameter '{name}' must be an integer", field=name)
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
        raise ValidationError(f"Query parameter '{name}' must be {bounds}", field=name)
    return value


def _bool_param(request: web.Request, name: str) -> Optional[bool]:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return None
    lowered = raw.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValidationError(f"Query parameter '{name}' must be a boolean", field=name)


def _datetime_param(request: web.Request, name: str) -> Optional[datetime]:
    """Parse an ISO timestamp into naive UTC."""
    raw = request.query.get(name)
    if not raw:
        return None
    try:
        value = date_parser.isoparse(raw)
    except (ValueError, OverflowError):
        raise ValidationError(f"Query parameter '{name}' must be an ISO 8601 timestamp", field=name)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _enum_param(request: web.Request, name: str, enum_cls):
    raw = request.query.get(name)
    if not raw:
        return None
    try:
        return enum_cls(raw.lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Query parameter '{name}' must be one of: {allowed}", field=name)


def _event_filter(request: web.Request) -> EventFilter:
    level = request.query.get("level")
    try:
        parsed_level = EventLevel.parse(level) if level else None
    except ValueError as e:
        raise ValidationError(str(e), field="level")
    after = request.query.get("after")
    return EventFilter(
        level=parsed_level,
        component=request.query.get("source") or None,
        plugin_id=request.query.get("plugin") or None,
        job_id=request.query.get("job") or None,
        since=_datetime_param(request, "since"),
        until=_datetime_param(request, "until"),
        text=request.query.get("q") or None,
        after_seq=_int_param(request, "after", 0, minimum=0) if after else None,
    )


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _max_page_size() -> int:
    return int(get_config_manager().get_setting("api.max_page_size", 500))


def _default_page_size() -> int:
    return int(get_config_manager().get_setting("api.page_size", 50))


# ==================== HEALTH & STATS ====================

async def health(request: web.Request) -> web.Response:
    return json_response(context(request).engine.health().model_dump(mode="json"))


async def stats(request: web.Request) -> web.Response:
    return json_response(await context(request).engine.statistics())


async def metrics(request: web.Request) -> web.Response:
    return json_response(context(request).engine.metrics_snapshot())


# ==================== PLUGINS ====================

async def list_plugins(request: web.Request) -> web.Response:
    engine = context(request).engine
    plugins = engine.list_plugins(
        enabled=_bool_param(request, "enabled"),
        source_type=_enum_param(request, "source_type", SourceType),
        search=request.query.get("q") or None,
    )
    return json_response({"items": [engine.plugin_view(p) for p in plugins], "total": len(plugins)})


async def create_plugin(request: web.Request) -> web.Response:
    engine = context(request).engine
    plugin = await engine.create_plugin(await _json_body(request))
    return json_response(engine.plugin_view(plugin), status=201)


async def get_plugin(request: web.Request) -> web.Response:
    engine = context(request).engine
    return json_response(engine.plugin_view(engine.get_plugin(request.match_info["plugin_id"])))


async def update_plugin(request: web.Request) -> web.Response:
    engine = context(request).engine
    plugin = await engine.update_plugin(request.match_info["plugin_id"], await _json_body(request))
    return json_response(engine.plugin_view(plugin))


async def delete_plugin(request: web.Request) -> web.Response:
    plugin = await context(request).engine.delete_plugin(request.match_info["plugin_id"])
    return json_response({"deleted": plugin.id})


async def enable_plugin(request: web.Request) -> web.Response:
    engine = context(request).engine
    plugin = await engine.set_plugin_enabled(request.match_info["plugin_id"], True)
    return json_response(engine.plugin_view(plugin))


async def disable_plugin(request: web.Request) -> web.Response:
    engine = context(request).engine
    plugin = await engine.set_plugin_enabled(request.match_info["plugin_id"], False)
    return json_response(engine.plugin_view(plugin))


async def run_plugin(request: web.Request) -> web.Response:
    job = await context(request).engine.run_plugin(request.match_info["plugin_id"])
    return json_response({"job_id": job.id, "job": job.to_dict()}, status=202)


async def plugin_records(request: web.Request) -> web.Response:
    records = await context(request).engine.list_records(
        request.match_info["plugin_id"],
        since=_datetime_param(request, "since"),
        limit=_int_param(request, "limit", 100, maximum=_max_page_size()),
        job_id=request.query.get("job") or None,
    )
    return json_response({"items": records, "total": len(records)})


async def preview_plugin(request: web.Request) -> web.Response:
    """Body is either a bare definition or ``{"definition": {...}, "content": "..."}``."""
    body = await _json_body(request)
    content = body.pop("content", None)
    definition = body.get("definition", body)
    if content is not None and not isinstance(content, str):
        raise ValidationError("'content' must be a string", field="content")
    result = await context(request).engine.preview_plugin(definition, content=content)
    return json_response(result)


# ==================== JOBS ====================

async def list_jobs(request: web.Request) -> web.Response:
    page = _int_param(request, "page", 1)
    size = _int_param(request, "size", _default_page_size(), maximum=_max_page_size())
    result = await context(request).engine.list_jobs(
        state=_enum_param(request, "status", JobState),
        plugin_id=request.query.get("plugin") or None,
        page=page,
        size=size,
    )
    response = PaginatedResponse.build(result["items"], result["total"], page, size)
    return json_response(response.model_dump(mode="json"))


async def get_job(request: web.Request) -> web.Response:
    job = await context(request).engine.get_job(request.match_info["job_id"])
    return json_response(job.to_dict())


async def cancel_job(request: web.Request) -> web.Response:
    result = await context(request).engine.cancel_job(request.match_info["job_id"])
    return json_response(result, status=202 if result["pending"] else 200)


# ==================== WORKERS ====================

async def workers(request: web.Request) -> web.Response:
    return json_response(await context(request).engine.workers())


# ==================== LOGS ====================

async def query_logs(request: web.Request) -> web.Response:
    limit = _int_param(request, "limit", _max_page_size(), maximum=max(_max_page_size(), 5000))
    events = context(request).engine.query_logs(_event_filter(request), limit=limit)
    return json_response({"items": events, "total": len(events)})


async def export_logs(request: web.Request) -> web.Response:
    fmt = (request.query.get("format") or "json").lower()
    body = context(request).engine.export_logs(_event_filter(request), fmt=fmt)
    content_type = "text/csv" if fmt == "csv" else "application/json"
    return web.Response(
        text=body,
        content_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="scrapeboard-logs.{fmt}"'},
    )


async def stream_logs(request: web.Request) -> web.WebSocketResponse:
    """Live tail: buffered history (unless ``replay=false``) followed by new events."""
    event_filter = _event_filter(request)
    replay = _bool_param(request, "replay")
    subscription = context(request).engine.subscribe_logs(event_filter, replay=replay is not False)

    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)

    async def watch_client() -> None:
        async for message in ws:
            if message.type == aiohttp.WSMsgType.ERROR:
                break
        subscription.close()

    watcher = asyncio.create_task(watch_client())
    try:
        async for event in subscription:
            if ws.closed:
                break
            await ws.send_str(_dumps(event.to_dict()))
    except ConnectionResetError:
        logger.debug(f"Log stream client {context(request).request_id} went away")
    finally:
        subscription.close()
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
        if not ws.closed:
            await ws.close()
    return ws


# ==================== APPLICATION ====================

async def _start_engine(engine: Engine, app: web.Application) -> None:
    await engine.start()


async def _stop_engine(engine: Engine, app: web.Application) -> None:
    await engine.stop()


def create_app(engine: Engine, manage_engine: bool = False) -> web.Application:
    """Build the aiohttp application.

    Args:
        engine: Engine serving the requests
        manage_engine: Start the engine on startup and stop it on cleanup
    """
    app = web.Application(middlewares=[context_middleware, error_middleware])
    app[ENGINE_KEY] = engine

    app.router.add_get("/health", health)
    app.router.add_get("/stats", stats)
    app.router.add_get("/metrics", metrics)

    app.router.add_get("/plugins", list_plugins)
    app.router.add_post("/plugins", create_plugin)
    app.router.add_post("/plugins/preview", preview_plugin)
    app.router.add_get("/plugins/{plugin_id}", get_plugin)
    app.router.add_put("/plugins/{plugin_id}", update_plugin)
    app.router.add_delete("/plugins/{plugin_id}", delete_plugin)
    app.router.add_post("/plugins/{plugin_id}/enable", enable_plugin)
    app.router.add_post("/plugins/{plugin_id}/disable", disable_plugin)
    app.router.add_post("/plugins/{plugin_id}/run", run_plugin)
    app.router.add_get("/plugins/{plugin_id}/records", plugin_records)

    app.router.add_get("/jobs", list_jobs)
    app.router.add_get("/jobs/{job_id}", get_job)
    app.router.add_post("/jobs/{job_id}/cancel", cancel_job)

    app.router.add_get("/workers", workers)

    app.router.add_get("/logs", query_logs)
    app.router.add_get("/logs/export", export_logs)
    app.router.add_get("/logs/stream", stream_logs)

    if manage_engine:
        app.on_startup.append(functools.partial(_start_engine, engine))
        app.on_cleanup.append(functools.partial(_stop_engine, engine))
    return app
