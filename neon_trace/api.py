"""
API REST del servicio de rutas y notificaciones push.

Utiliza FastAPI para exponer el cálculo de rutas contra openrouteservice,
el historial de rutas calculadas, el registro de tokens push de
dispositivos y la difusión de notificaciones vía FCM.
"""

import logging
import os
import time
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
try:
    from prometheus_fastapi_instrumentator import Instrumentator
except ImportError:  # pragma: no cover - dependencia opcional
    Instrumentator = None

from .config import Settings
from .errors import NeonTraceError
from .integrations.maps import RouteResolver
from .integrations.notifications import DispatchEngine, PushNotification
from .observability import Observability
from .store import RecordStore, store_from_env


logger = logging.getLogger(__name__)

SERVICE_NAME = "neon-trace-api"
ROUTE_LOGS = "route_logs"
DEVICES = "devices"
BROADCASTS = "broadcasts"

app = FastAPI(title="Neon Trace API", version="0.1")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["Authorization", "Content-Type"],
)

observability = Observability(app)

if Instrumentator:
    Instrumentator().instrument(app).expose(app)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache
def get_store() -> RecordStore:
    return store_from_env()


@lru_cache
def get_route_resolver() -> RouteResolver:
    return RouteResolver.from_settings(get_settings())


@lru_cache
def get_dispatch_engine() -> DispatchEngine:
    # Instancia única para que el token OAuth2 se reutilice entre peticiones.
    return DispatchEngine.from_settings(get_settings())


class RouteRequest(BaseModel):
    origin: Any = Field(None, description="{lat, lng} o par [lat, lng] / [lng, lat]")
    destination: Any = Field(None, description="{lat, lng} o par [lat, lng] / [lng, lat]")
    profile: str = Field("driving-car", description="Perfil de ORS (driving-car, cycling-regular, ...)")


class DeviceRegistration(BaseModel):
    device_id: str
    push_token: str
    platform: str | None = None


class BroadcastRequest(BaseModel):
    title: str
    body: str
    data: dict[str, Any] | None = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.exception_handler(NeonTraceError)
async def neon_trace_error_handler(request: Request, exc: NeonTraceError):
    logger.error("[%s] %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.get("/")
async def root():
    return {"ok": True, "service": SERVICE_NAME}


@app.get("/health")
async def health():
    """Endpoint de salud para comprobar que la API funciona."""
    return {"status": "ok"}


@app.get("/api/logs")
async def route_logs(limit: int = 50, store: RecordStore = Depends(get_store)):
    """Devuelve las últimas rutas calculadas, de la más reciente a la más antigua."""
    return {"logs": store.list(ROUTE_LOGS, limit=max(1, min(limit, 50)))}


@app.post("/api/route")
async def compute_route(
    body: RouteRequest,
    resolver: RouteResolver = Depends(get_route_resolver),
    store: RecordStore = Depends(get_store),
):
    """Calcula la ruta más corta entre origen y destino y la registra."""

    started = time.perf_counter()
    result = await resolver.resolve(body.origin, body.destination, body.profile)
    log = {
        "origin": result.origin.as_dict(),
        "destination": result.destination.as_dict(),
        "profile": result.profile,
        "pathsAnalyzed": result.paths_analyzed,
        "chosen": {"distance": result.distance, "duration": result.duration},
        "fallback": result.used_fallback,
        "createdAt": _now_iso(),
        "t": int((time.perf_counter() - started) * 1000),
    }
    store.upsert(ROUTE_LOGS, uuid.uuid4().hex, log)
    return result.to_response()


@app.post("/api/devices")
async def register_device(body: DeviceRegistration, store: RecordStore = Depends(get_store)):
    """Registra (o actualiza) el token push de un dispositivo."""

    existing = store.get(DEVICES, body.device_id)
    record = {
        "device_id": body.device_id,
        "push_token": body.push_token,
        "platform": body.platform,
        "registeredAt": existing["registeredAt"] if existing else _now_iso(),
        "updatedAt": _now_iso(),
    }
    return store.upsert(DEVICES, body.device_id, record)


@app.get("/api/devices/{device_id}")
async def get_device(device_id: str, store: RecordStore = Depends(get_store)):
    device = store.get(DEVICES, device_id)
    if not device:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dispositivo no encontrado")
    return device


@app.post("/api/notifications/broadcast")
async def broadcast_notification(
    body: BroadcastRequest,
    engine: DispatchEngine = Depends(get_dispatch_engine),
    store: RecordStore = Depends(get_store),
):
    """Envía la notificación a todos los tokens push registrados."""

    devices = store.list(DEVICES, limit=store.count(DEVICES))
    # Un mismo token puede estar registrado por varios dispositivos.
    tokens = list(dict.fromkeys(d["push_token"] for d in devices if d.get("push_token")))
    notification = PushNotification(title=body.title, body=body.body, data=body.data or {})
    result = await engine.broadcast(notification, tokens)
    store.upsert(
        BROADCASTS,
        uuid.uuid4().hex,
        {"title": body.title, **result.as_dict(), "createdAt": _now_iso()},
    )
    return result.as_dict()


@app.get("/api/admin/stats")
async def admin_stats(store: RecordStore = Depends(get_store)):
    return {
        "store": store.name,
        "devices": store.count(DEVICES),
        "routeLogs": store.count(ROUTE_LOGS),
        "broadcasts": store.count(BROADCASTS),
    }


def main() -> None:
    """Punto de entrada del servidor HTTP."""
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    port = int(os.getenv("PORT", "3001"))
    logger.info("API escuchando en :%s", port)
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=port)


if __name__ == "__main__":
    main()
