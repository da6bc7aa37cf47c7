"""JSON API over the query engine.

Starlette app with one read-only route per query operation. Every request
fetches its handle from a :class:`~dbt_ui.storage.StoreCache`, so a rebuilt
store is served without restarting.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Callable

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from .errors import StoreOpenError
from .models import to_payload
from .query import QueryEngine
from .storage import StoreCache

logger = logging.getLogger(__name__)


def _error(message: str, status_code: int = 500, **extra: Any) -> JSONResponse:
    return JSONResponse({**extra, "error": message}, status_code=status_code)


def create_app(cache: StoreCache) -> Starlette:
    """Create the Starlette ASGI application."""

    def with_engine(handler: Callable[[Request, QueryEngine], JSONResponse]):
        async def endpoint(request: Request) -> JSONResponse:
            try:
                engine = QueryEngine(cache.get())
                return handler(request, engine)
            except StoreOpenError as exc:
                logger.exception("Store unavailable for %s", request.url.path)
                return _error(str(exc))
            except sqlite3.Error as exc:
                logger.exception("Query failed for %s", request.url.path)
                return _error(str(exc))
            except Exception as exc:
                logger.exception("Request failed for %s", request.url.path)
                return _error(str(exc))

        return endpoint

    async def api_db(request: Request) -> JSONResponse:
        db_path = str(cache.path)
        try:
            ok = cache.get().scalar("SELECT 1") == 1
        except (StoreOpenError, sqlite3.Error) as exc:
            logger.exception("Health check failed")
            return _error(str(exc), ok=False, dbPath=db_path)
        return JSONResponse({"ok": ok, "dbPath": db_path})

    def api_models(request: Request, engine: QueryEngine) -> JSONResponse:
        params = request.query_params
        page = engine.list_models(limit=params.get("limit"), offset=params.get("offset"))
        return JSONResponse(to_payload(page))

    def api_model(request: Request, engine: QueryEngine) -> JSONResponse:
        detail = engine.get_model(request.path_params["id"])
        if detail is None:
            return _error("Model not found", status_code=404)
        return JSONResponse(to_payload(detail))

    def api_lineage(request: Request, engine: QueryEngine) -> JSONResponse:
        lineage = engine.get_lineage(request.path_params["id"], depth=request.query_params.get("depth"))
        return JSONResponse(to_payload(lineage))

    def api_lineage_all(request: Request, engine: QueryEngine) -> JSONResponse:
        return JSONResponse(to_payload(engine.get_all_models_and_edges()))

    async def api_search(request: Request) -> JSONResponse:
        q = request.query_params.get("q", "")
        if not q.strip():
            return JSONResponse({"results": []})
        return await with_engine(
            lambda req, engine: JSONResponse({"results": to_payload(engine.search(q))})
        )(request)

    def api_nav_database(request: Request, engine: QueryEngine) -> JSONResponse:
        return JSONResponse({"databases": to_payload(engine.database_tree())})

    # /api/lineage/all must precede the {id} route.
    return Starlette(routes=[
        Route("/api/db", api_db),
        Route("/api/models", with_engine(api_models)),
        Route("/api/models/{id:path}", with_engine(api_model)),
        Route("/api/lineage/all", with_engine(api_lineage_all)),
        Route("/api/lineage/{id:path}", with_engine(api_lineage)),
        Route("/api/search", api_search),
        Route("/api/nav/database", with_engine(api_nav_database)),
    ])
