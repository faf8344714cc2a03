"""aiohttp trigger API: scan, traffic refresh, approval and syndication clustering."""

import time
from typing import Any

import orjson
from aiohttp import web

from .approval import ApprovalWorkflow
from .config import CredentialSnapshot, Settings, get_settings
from .errors import InvalidRequestError, InvalidTransitionError, NotFoundError
from .logging import get_logger, log_api_request, log_error
from .orchestrator import ScanOrchestrator
from .processing.dedupe import SyndicationClusterer
from .processing.traffic import TrafficTierClassifier
from .security import security_middleware, trigger_auth_middleware
from .store import CoverageStore

logger = get_logger(__name__)

SETTINGS_KEY = web.AppKey("settings", Settings)
STORE_KEY = web.AppKey("store", CoverageStore)


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.Response(
        body=orjson.dumps(data, default=str),
        status=status,
        content_type="application/json",
    )


def _error(message: str, status: int) -> web.Response:
    return json_response({"error": message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map domain errors to JSON error responses and log every request."""
    started = time.monotonic()
    try:
        response = await handler(request)
    except InvalidRequestError as e:
        response = _error(str(e), 400)
    except NotFoundError as e:
        response = _error(str(e), 404)
    except InvalidTransitionError as e:
        response = _error(str(e), 409)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(**log_error(e, context="api", method=request.method, path=request.path),
                     exc_info=True)
        response = _error(str(e) or e.__class__.__name__, 500)

    logger.info(**log_api_request(
        request.method,
        request.path,
        response.status,
        time.monotonic() - started,
    ))
    return response


async def _read_json(request: web.Request) -> dict[str, Any]:
    body = await request.read()
    if not body:
        return {}
    try:
        data = orjson.loads(body)
    except orjson.JSONDecodeError:
        raise InvalidRequestError("Request body is not valid JSON") from None
    if not isinstance(data, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return data


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidRequestError(f"{key} must be a string")
    return value


async def coverage_scan(request: web.Request) -> web.Response:
    data = await _read_json(request)
    source_id = _optional_str(data, "source_id")
    scan_all = data.get("scan_all", False)
    if not isinstance(scan_all, bool):
        raise InvalidRequestError("scan_all must be a boolean")

    orchestrator = ScanOrchestrator(request.app[STORE_KEY], request.app[SETTINGS_KEY])
    report = await orchestrator.scan(source_id=source_id, scan_all=scan_all)
    return json_response(report.to_dict())


async def traffic_refresh(request: web.Request) -> web.Response:
    data = await _read_json(request)
    outlet_id = _optional_str(data, "outlet_id")
    domain = _optional_str(data, "domain")
    if not outlet_id and not domain:
        raise InvalidRequestError("Provide outlet_id or domain")

    store = request.app[STORE_KEY]
    settings = request.app[SETTINGS_KEY]
    credentials = CredentialSnapshot.resolve(await store.get_credentials(), settings)
    async with TrafficTierClassifier(store, credentials, settings) as classifier:
        result = await classifier.refresh(outlet_id=outlet_id, domain=domain)
    return json_response(result.to_dict())


async def update_coverage_items(request: web.Request) -> web.Response:
    data = await _read_json(request)
    status = _optional_str(data, "approval_status")
    if status is None:
        raise InvalidRequestError("approval_status is required")

    workflow = ApprovalWorkflow(request.app[STORE_KEY])

    if "ids" in data:
        ids = data["ids"]
        if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
            raise InvalidRequestError("ids must be a list of strings")
        result = await workflow.bulk_set_status(ids, status)
        return json_response(result.to_dict())

    item_id = _optional_str(data, "id")
    if item_id is None:
        raise InvalidRequestError("Provide id or ids")
    new_status = await workflow.set_status(item_id, status)
    return json_response({"id": item_id, "approval_status": new_status.value})


async def coverage_dedup(request: web.Request) -> web.Response:
    clusterer = SyndicationClusterer(request.app[STORE_KEY], request.app[SETTINGS_KEY])
    result = await clusterer.run()
    return json_response(result.to_dict())


async def _store_ctx(app: web.Application):
    async with CoverageStore(app[SETTINGS_KEY].database_path) as store:
        app[STORE_KEY] = store
        yield


def create_app(settings: Settings | None = None, store: CoverageStore | None = None) -> web.Application:
    """Build the API application.

    When ``store`` is given it is used as-is and its lifecycle stays with the
    caller; otherwise the app opens the configured database on startup.
    """
    settings = settings or get_settings()
    app = web.Application(
        middlewares=[
            security_middleware,
            trigger_auth_middleware(settings.trigger_secret),
            error_middleware,
        ],
        client_max_size=settings.max_request_size_mb * 1024 * 1024,
    )
    app[SETTINGS_KEY] = settings
    if store is not None:
        app[STORE_KEY] = store
    else:
        app.cleanup_ctx.append(_store_ctx)

    app.router.add_post("/api/coverage-scan", coverage_scan)
    app.router.add_post("/api/traffic-refresh", traffic_refresh)
    app.router.add_put("/api/coverage-items", update_coverage_items)
    app.router.add_post("/api/coverage-dedup", coverage_dedup)
    return app
