"""
Punto de entrada de la aplicación FastAPI.
Construye el motor de sincronización en el lifespan y monta los routers.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from studysync.api.v1.router import api_v1_router
from studysync.config import get_settings
from studysync.database import build_engine, build_session_factory, create_all
from studysync.services.local_storage import FileLocalStorage
from studysync.services.remote_backend import SqlDocumentBackend
from studysync.services.sync_service import SyncEngine

settings = get_settings()

logger = logging.getLogger(__name__)


# ── Lifecycle ────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Eventos de inicio y cierre de la aplicación."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    # Startup
    db_engine = build_engine()
    if not settings.is_production:
        await create_all(db_engine)

    sync_engine = SyncEngine(
        backend=SqlDocumentBackend(build_session_factory(db_engine)),
        storage=FileLocalStorage(settings.local_storage_path),
        settings=settings,
    )
    await sync_engine.start()
    app.state.sync_engine = sync_engine
    logger.info(f"{settings.APP_NAME} iniciando en modo {settings.APP_ENV}")

    yield

    # Shutdown
    logger.info(f"{settings.APP_NAME} cerrando...")
    await sync_engine.stop()
    await db_engine.dispose()


# ── App ──────────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    description="Motor de sincronización offline-first para el seguimiento de estudio",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Global Exception Handler ────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Captura excepciones no manejadas para evitar exponer detalles internos."""
    logger.error(f"Error no manejado en {request.url.path}: {exc}")
    if settings.DEBUG:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": str(exc), "type": type(exc).__name__},
        )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Error interno del servidor"},
    )


# ── Routers ──────────────────────────────────────────
app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)


# ── Health Check ─────────────────────────────────────
@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check; también sirve como probe de conectividad de otros clientes."""
    engine = getattr(request.app.state, "sync_engine", None)
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "environment": settings.APP_ENV,
        "sync_state": engine.get_status().sync_state if engine else None,
    }
