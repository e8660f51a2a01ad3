from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from earthlord.api.trade import router as trade_router
from earthlord.auth.security import get_current_player_id, rate_limiter_dependency
from earthlord.core import config, database, state
from earthlord.core.errors import GameError
from earthlord.core.metrics import metrics
from earthlord.core.state import Services, build_services, get_services, set_services
from earthlord.core.time_utils import isoformat_utc, utc_now

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: starts the DB, wires services, and runs the expiration sweeper."""
    logging.getLogger("earthlord").setLevel(config.LOG_LEVEL)
    await database.start_db()
    if config.get_dev_create_all():
        await database.init_db()
    services = build_services(database.get_sessionmaker())
    set_services(services)
    logger.info(
        "startup_config",
        extra={
            "database_url_scheme": config.get_database_url().split(":", 1)[0],
            "DEV_CREATE_ALL": config.get_dev_create_all(),
            "sweep_enabled": config.get_sweep_enabled(),
            "sweep_interval_s": config.get_sweep_interval_seconds(),
            "templates": len(services.catalog.templates()),
            "items": len(services.catalog.items()),
        },
    )
    if config.get_sweep_enabled():
        services.sweeper.start()
    try:
        yield
    finally:
        try:
            await services.sweeper.stop()
        finally:
            set_services(None)
            await database.shutdown_db()


app = FastAPI(title="EarthLord Construction & Trade Server", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=config.CORS_ALLOW_METHODS,
    allow_headers=config.CORS_ALLOW_HEADERS,
)

app.include_router(trade_router)


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", exc_info=exc, extra={"action_type": exc.kind, "path": request.url.path})
    metrics.increment_event(f"errors.{exc.kind}")
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.perf_counter()
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.perf_counter() - start
        route_obj = request.scope.get("route")
        route_path = getattr(route_obj, "path", request.url.path)
        status = getattr(response, "status_code", 500)
        metrics.record_http(request.method, route_path, status, duration)


@app.get("/metrics")
async def get_metrics():
    return metrics.snapshot()


@app.get("/healthz")
async def healthz():
    """Liveness plus a summary of the sweeper and database state."""
    db_ok = await database.check_database()
    snap = metrics.snapshot()
    sweeper = snap.get("sweeper", {})
    running = bool(state.services is not None and state.services.sweeper.running)
    return {
        "status": "ok",
        "time": isoformat_utc(utc_now()),
        "uptime_s": snap["process"]["uptime_s"],
        "database": {"status": "ok" if db_ok else "fail"},
        "sweeper": {
            "running": running,
            "passes": sweeper.get("passes", 0),
            "offers_expired": sweeper.get("offers_expired", 0),
            "buildings_completed": sweeper.get("buildings_completed", 0),
            "last_ms": sweeper.get("last_ms", 0.0),
        },
    }


@app.get("/healthz/db")
async def healthz_db():
    """Database health probe endpoint."""
    enabled = database.engine is not None
    ok = await database.check_database() if enabled else False
    return {"database": {"enabled": enabled, "status": "ok" if ok else "fail"}}


# --- Catalog ---

@app.get("/catalog/buildings")
async def list_building_templates(category: Optional[str] = Query(default=None), services: Services = Depends(get_services)):
    try:
        templates = services.catalog.templates(category)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown building category: {category}")
    return {"templates": [t.to_dict() for t in templates]}


@app.get("/catalog/buildings/{template_id}")
async def get_building_template(template_id: str, services: Services = Depends(get_services)):
    return services.catalog.require_template(template_id).to_dict()


@app.get("/catalog/items")
async def list_item_definitions(category: Optional[str] = Query(default=None), services: Services = Depends(get_services)):
    try:
        items = services.catalog.items(category)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown item category: {category}")
    return {"items": [i.to_dict() for i in items]}


@app.get("/catalog/items/{item_id}")
async def get_item_definition(item_id: str, services: Services = Depends(get_services)):
    return services.catalog.require_item(item_id).to_dict()


# --- Inventory ---

@app.get("/inventory")
async def get_inventory(
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    balances: Dict[str, int] = await services.ledger.balances(player_id)
    return {"player_id": player_id, "items": balances}


# --- Buildings ---

class Location(BaseModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lon: float = Field(ge=-180.0, le=180.0)


class StartConstructionRequest(BaseModel):
    template_id: str
    territory_id: str = Field(min_length=1, max_length=64)
    location: Optional[Location] = None
    building_name: Optional[str] = Field(default=None, max_length=100)


@app.get("/buildings")
async def list_buildings(
    territory_id: Optional[str] = Query(default=None),
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    buildings = await services.construction.list_buildings(player_id, territory_id=territory_id)
    return {"buildings": [b.to_dict() for b in buildings]}


@app.post("/buildings")
async def start_construction(
    payload: StartConstructionRequest,
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    location = (payload.location.lat, payload.location.lon) if payload.location else None
    building = await services.construction.start_construction(
        player_id,
        payload.template_id,
        payload.territory_id,
        location=location,
        building_name=payload.building_name,
    )
    return building.to_dict()


@app.get("/buildings/check")
async def check_construction(
    template_id: str = Query(...),
    territory_id: Optional[str] = Query(default=None),
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    """Advisory check whether the player could start this building now."""
    template = services.catalog.require_template(template_id)
    result = await services.construction.check_resources(template_id, player_id)
    body = {"template_id": template_id, **result.to_dict(), "can_build": result.sufficient}
    if territory_id is not None:
        count = await services.construction.count_in_territory(territory_id, template_id)
        body.update({
            "territory_id": territory_id,
            "current_count": count,
            "max_per_territory": template.max_per_territory,
            "can_build": result.sufficient and count < template.max_per_territory,
        })
    return body


@app.get("/buildings/count")
async def count_buildings(
    category: str = Query(...),
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    try:
        count = await services.construction.count_by_category(player_id, category)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown building category: {category}")
    return {"category": category, "count": count}


@app.get("/buildings/{building_id}")
async def get_building(
    building_id: str,
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    return (await services.construction.get_building(building_id)).to_dict()


@app.post("/buildings/{building_id}/finalize")
async def finalize_construction(
    building_id: str,
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    return (await services.construction.finalize_construction(building_id, player_id)).to_dict()


@app.post("/buildings/{building_id}/upgrade")
async def upgrade_building(
    building_id: str,
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    return (await services.construction.upgrade_building(building_id, player_id)).to_dict()


@app.delete("/buildings/{building_id}")
async def demolish_building(
    building_id: str,
    player_id: str = Depends(get_current_player_id),
    _rl=Depends(rate_limiter_dependency),
    services: Services = Depends(get_services),
):
    snapshot = await services.construction.demolish_building(building_id, player_id)
    return {"demolished": True, "building": snapshot.to_dict()}


__all__ = ["app", "lifespan"]
