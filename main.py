from contextlib import asynccontextmanager
import logging

import socketio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from alert_routes import router as alert_router
from chat import ai_router, router as chat_router
from config import settings
from cultivation import router as cultivation_router
from database import get_db
from notification_routes import router as notification_router
from realtime import sio
from report_routes import router as report_router
from scheduler import start_scheduler, stop_scheduler
from services import router as sensor_router

logger = logging.getLogger("agronex_api")

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    get_db()
    if settings.enable_scheduler:
        start_scheduler()
    yield
    stop_scheduler()


app = FastAPI(title="AgroNex - Monitoreo de Cultivos", version=VERSION, lifespan=lifespan)

# Configurar CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sensor_router)
app.include_router(alert_router)
app.include_router(notification_router)
app.include_router(cultivation_router)
app.include_router(chat_router)
app.include_router(ai_router)
app.include_router(report_router)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Error no controlado en {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Error interno del servidor"})


@app.get("/")
async def root():
    """Endpoint raíz para verificar que la API está funcionando."""
    return {
        "message": "API de AgroNex funcionando correctamente",
        "endpoints": [
            {"path": "/api/iot/ingest", "method": "POST", "description": "Ingesta de lecturas del ESP32"},
            {"path": "/api/sensors", "method": "GET/POST/DELETE", "description": "Lecturas, analítica y tendencias"},
            {"path": "/api/devices", "method": "GET/POST/DELETE", "description": "Dispositivos y tokens"},
            {"path": "/api/alerts", "method": "GET/POST/PATCH/DELETE", "description": "Alertas reactivas y predictivas"},
            {"path": "/api/thresholds", "method": "GET/POST/PUT/DELETE", "description": "Umbrales"},
            {"path": "/api/notifications", "method": "GET/POST", "description": "Suscripciones push"},
            {"path": "/api/settings", "method": "GET/PUT", "description": "Ajustes de usuario"},
            {"path": "/api/recipes", "method": "GET/POST/PUT/DELETE", "description": "Recetas de cultivo"},
            {"path": "/api/phases", "method": "GET/POST", "description": "Fases activas por sala"},
            {"path": "/api/calendar", "method": "GET/POST/PUT/DELETE", "description": "Calendario"},
            {"path": "/api/chats", "method": "GET/POST/PATCH/DELETE", "description": "Chats"},
            {"path": "/api/messages", "method": "GET/POST/DELETE", "description": "Mensajes"},
            {"path": "/api/chat", "method": "POST", "description": "Asistente de IA"},
            {"path": "/api/reports", "method": "GET/POST/DELETE", "description": "Reportes CSV y programados"},
        ],
        "version": VERSION,
    }


@app.get("/api/health")
async def health():
    try:
        get_db().ping()
        database = "ok"
    except Exception as e:
        logger.error(f"Base de datos no disponible: {e}")
        database = "error"
    return {"status": "ok" if database == "ok" else "degraded", "database": database}


# Socket.IO montado sobre la app de FastAPI
asgi_app = socketio.ASGIApp(sio, app)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:asgi_app", host="0.0.0.0", port=8000, reload=True)
