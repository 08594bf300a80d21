import asyncio
import logging
import traceback
from typing import List, Optional

import asyncpg
from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.datastructures import MutableHeaders

from config import Settings, get_settings
from errors import InvalidInput, ProxyError
from plant_store import (
    PlantCatalog,
    PostgresSubjectResolver,
    SupabaseSubjectResolver,
    create_pool,
)
from schemas import (
    CatalogStats,
    CategoryCreate,
    CategoryUpdate,
    ContentResponse,
    ErrorResponse,
    Plant,
    PlantCategory,
    PlantCreate,
    PlantPage,
    PlantUpdate,
    QueryRequest,
)
from service import GeminiClient, QueryProxy

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "GET, POST, PATCH, DELETE, OPTIONS",
}
DISCONNECT_POLL = 0.5
ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}
CATALOG_ERROR_RESPONSES = {
    **ERROR_RESPONSES,
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


# --- Логирование
class _SecretFilter(logging.Filter):
    """Replaces API keys in log records with a mask."""

    def __init__(self, secrets: list[str]) -> None:
        super().__init__()
        self.secrets = [s for s in secrets if s]

    def _mask(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, "<SECRET>")
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if self.secrets:
            record.msg = self._mask(str(record.msg))
            if record.args:
                record.args = tuple(
                    self._mask(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )
        return True


def setup_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level.upper())
    secret_filter = _SecretFilter(settings.secrets())
    for handler in logging.getLogger().handlers:
        handler.addFilter(secret_filter)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


class CORSHeadersMiddleware:
    """Answers preflight requests and adds the CORS headers to every response."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            response = Response(status_code=200, headers=CORS_HEADERS)
            await response(scope, receive, send)
            return

        async def send_with_cors(message):
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for key, value in CORS_HEADERS.items():
                    headers[key] = value
            await send(message)

        await self.app(scope, receive, send_with_cors)


def error_response(error: ProxyError) -> JSONResponse:
    return JSONResponse({"error": error.message}, status_code=error.status_code)


def _build_proxy(settings: Settings, pool=None) -> QueryProxy:
    if pool is not None:
        resolver = PostgresSubjectResolver(pool)
    elif settings.supabase_url and settings.supabase_key:
        resolver = SupabaseSubjectResolver(settings.supabase_url, settings.supabase_key, settings.lookup_timeout)
    else:
        resolver = None
    return QueryProxy(
        GeminiClient.from_settings(settings),
        resolver=resolver,
        lookup_timeout=settings.lookup_timeout,
    )


async def _run_until_disconnect(request: Request, coro):
    """Awaits `coro`, cancelling it if the client goes away first."""
    task = asyncio.ensure_future(coro)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("[gemini_plant_info] client disconnected, upstream call cancelled")
                return None
    finally:
        if not task.done():
            task.cancel()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(title="Ayurvedic Atlas")
    app.add_middleware(CORSHeadersMiddleware)
    app.state.settings = settings
    app.state.pool = None
    app.state.catalog = None
    app.state.proxy = _build_proxy(settings)

    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set, /gemini-plant-info will answer with a configuration error.")

    @app.on_event("startup")
    async def startup():
        if not settings.database_url:
            return
        try:
            pool = await create_pool(settings.database_url)
        except Exception as e:
            logger.error(f"[startup] could not connect to the plant database: {e}\n{traceback.format_exc()}")
            return
        app.state.pool = pool
        app.state.catalog = PlantCatalog(pool)
        app.state.proxy = _build_proxy(settings, pool)
        logger.info("Plant database connected.")

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.pool is not None:
            await app.state.pool.close()
            app.state.pool = None

    # --- Query proxy
    @app.post("/", response_model=ContentResponse, responses=ERROR_RESPONSES)
    @app.post("/gemini-plant-info", response_model=ContentResponse, responses=ERROR_RESPONSES)
    async def gemini_plant_info(request: Request):
        try:
            data = await request.json()
        except ValueError:
            return error_response(InvalidInput("Request body must be valid JSON"))
        try:
            req = QueryRequest.model_validate(data)
        except ValidationError:
            return error_response(InvalidInput("Request body must be an object with a 'query' string"))

        result = await _run_until_disconnect(
            request,
            request.app.state.proxy.answer_query(
                req.query, req.plantInfo, request.headers.get("authorization")
            ),
        )
        if result is None:
            return Response(status_code=499)
        if not result.ok:
            logger.warning(f"[gemini_plant_info] {type(result.error).__name__}: {result.error.message}")
            return error_response(result.error)
        return {"content": result.content}

    # --- Catalog
    def _no_database() -> JSONResponse:
        return JSONResponse({"error": "Plant database is not configured"}, status_code=503)

    @app.get("/plants", response_model=PlantPage, responses=CATALOG_ERROR_RESPONSES)
    async def list_plants(
        request: Request,
        category_id: Optional[int] = None,
        search: Optional[str] = None,
        limit: int = Query(12, ge=1, le=100),
        page: int = Query(1, ge=1),
    ):
        catalog = request.app.state.catalog
        if catalog is None:
            return _no_database()
        try:
            result = await catalog.list_plants(category_id, search, limit, (page - 1) * limit)
        except Exception as e:
            logger.error(f"[list_plants] {e}\n{traceback.format_exc()}")
            return JSONResponse({"error": "Failed to load plants"}, status_code=500)
        return result

    @app.get("/plants/featured", response_model=List[Plant], responses=CATALOG_ERROR_RESPONSES)
    async def featured_plants(request: Request, limit: int = Query(6, ge=1, le=100)):
        catalog = request.app.state.catalog
        if catalog is None:
            return _no_database()
        try:
            return await catalog.featured_plants(limit)
        except Exception as e:
            logger.error(f"[featured_plants] {e}\n{traceback.format_exc()}")
            return JSONResponse({"error": "Failed to load featured plants"}, status_code=500)

    @app.get("/plants/{plant_id}", response_model=Plant, responses=CATALOG_ERROR_RESPONSES)
    async def get_plant(request: Request, plant_id: int):
        catalog = request.app.state.catalog
        if catalog is None:
            return _no_database()
        try:
            plant = await catalog.get_plant(plant_id)
        except Exception as e:
            logger.error(f"[get_plant] {e}\n{traceback.format_exc()}")
            return JSONResponse({"error": "Failed to load plant details"}, status_code=500)
        if plant is None:
            return JSONResponse({"error": "Plant not found"}, status_code=404)
        return plant

    @app.get("/categories", response_model=List[PlantCategory], responses=CATALOG_ERROR_RESPONSES)
    async def list_categories(request: Request):
        catalog = request.app.state.catalog
        if catalog is None:
            return _no_database()
        try:
            return await catalog.list_categories()
        except Exception as e:
            logger.error(f"[list_categories] {e}\n{traceback.format_exc()}")
            return JSONResponse({"error": "Failed to load plant categories"}, status_code=500)

    @app.get("/stats", response_model=CatalogStats, responses=CATALOG_ERROR_RESPONSES)
    async def stats(request: Request):
        catalog = request.app.state.catalog
        if catalog is None:
            return _no_database()
        try:
            return await catalog.stats()
        except Exception as e:
            logger.error(f"[stats] {e}\n{traceback.format_exc()}")
            return JSONResponse({"error": "Failed to load database statistics"}, status_code=500)

    # --- Catalog writes
    def _write_failed(handler: str, message: str, e: Exception) -> JSONResponse:
        if isinstance(e, ValueError):
            return JSONResponse({"error": str(e)}, status_code=400)
        if isinstance(e, asyncpg.IntegrityConstraintViolationError):
            logger.warning(f"[{handler}] {e}")
            return JSONResponse({"error": f"{message}: {e}"}, status_code=409)
        logger.error(f"[{handler}] {e}\n{traceback.format_exc()}")
        return JSONResponse({"error": message}, status_code=500)

    @app.post("/categories", status_code=201, response_model=PlantCategory, responses=CATALOG_ERROR_RESPONSES)
    async def create_category(request: Request, body: CategoryCreate):
        catalog = request.app.state.catalog
        if catalog is None:
            return _no_database()
        try:
            return await catalog.create_category(body)
        except Exception as e:
            return _write_failed("create_category", "Failed to create category", e)

    @app.patch("/categories/{category_id}", response_model=PlantCategory, responses=CATALOG_ERROR_RESPONSES)
    async def update_category(request: Request, category_id: int, body: CategoryUpdate):
        catalog = request.app.state.catalog
        if catalog is None:
            return _no_database()
        try:
            category = await catalog.update_category(category_id, body)
        except Exception as e:
            return _write_failed("update_category", "Failed to update category", e)
        if category is None:
            return JSONResponse({"error": "Category not found"}, status_code=404)
        return category

    @app.delete("/categories/{category_id}", status_code=204, responses=CATALOG_ERROR_RESPONSES)
    async def delete_category(request: Request, category_id: int):
        catalog = request.app.state.catalog
        if catalog is None:
            return _no_database()
        try:
            deleted = await catalog.delete_category(category_id)
        except Exception as e:
            return _write_failed("delete_category", "Failed to delete category", e)
        if not deleted:
            return JSONResponse({"error": "Category not found"}, status_code=404)
        return Response(status_code=204)

    @app.post("/plants", status_code=201, response_model=Plant, responses=CATALOG_ERROR_RESPONSES)
    async def create_plant(request: Request, body: PlantCreate):
        catalog = request.app.state.catalog
        if catalog is None:
            return _no_database()
        try:
            return await catalog.create_plant(body)
        except Exception as e:
            return _write_failed("create_plant", "Failed to create plant", e)

    @app.patch("/plants/{plant_id}", response_model=Plant, responses=CATALOG_ERROR_RESPONSES)
    async def update_plant(request: Request, plant_id: int, body: PlantUpdate):
        catalog = request.app.state.catalog
        if catalog is None:
            return _no_database()
        try:
            plant = await catalog.update_plant(plant_id, body)
        except Exception as e:
            return _write_failed("update_plant", "Failed to update plant", e)
        if plant is None:
            return JSONResponse({"error": "Plant not found"}, status_code=404)
        return plant

    @app.delete("/plants/{plant_id}", status_code=204, responses=CATALOG_ERROR_RESPONSES)
    async def delete_plant(request: Request, plant_id: int):
        catalog = request.app.state.catalog
        if catalog is None:
            return _no_database()
        try:
            deleted = await catalog.delete_plant(plant_id)
        except Exception as e:
            return _write_failed("delete_plant", "Failed to delete plant", e)
        if not deleted:
            return JSONResponse({"error": "Plant not found"}, status_code=404)
        return Response(status_code=204)

    @app.get("/health")
    async def health(request: Request):
        return {
            "ok": True,
            "upstream_configured": request.app.state.proxy.client.configured,
            "database": request.app.state.catalog is not None,
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8080)
