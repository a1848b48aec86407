"""
Point d'entrée principal de l'API CarteSync.
Démarrage : uvicorn app.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import app.models  # noqa: F401 — enregistre tous les modèles dans Base.metadata avant les routers
from app.config import settings
from app.exceptions import (
    AlreadyCancelledError,
    AuthError,
    CarteSyncError,
    ForbiddenError,
    NotFoundError,
    PersistenceError,
    UndoError,
)
from app.routers import cartes, external, journal, sync
from app.scheduler import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)

# Filet de sécurité pour les erreurs métier non traduites par un router (ordre significatif)
ERROR_STATUS = (
    (AuthError, 401),
    (ForbiddenError, 403),
    (NotFoundError, 404),
    (AlreadyCancelledError, 409),
    (UndoError, 400),
    (ValueError, 400),
    (PersistenceError, 500),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Démarre la purge planifiée du journal (si activée) et l'arrête à la fermeture."""
    if settings.SCHEDULER_ENABLED:
        start_scheduler()
    yield
    stop_scheduler()


app = FastAPI(
    title="CarteSync API",
    description="Réconciliation et synchronisation multi-sites des cartes, avec journal réversible",
    version="0.1.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# Les agents des sites et l'application externe n'utilisent pas de navigateur :
# seul le front d'administration local a besoin du CORS.
app.add_middleware(
    CORSMiddleware,
    allow_origins=[],
    allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "X-API-Token"],
)

for router in (sync.router, journal.router, external.router, cartes.router):
    app.include_router(router)


@app.exception_handler(CarteSyncError)
async def domain_exception_handler(request: Request, exc: CarteSyncError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error("Erreur métier sur %s : %s", request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Intercepte toutes les exceptions non gérées pour que la réponse 500
    passe par CORSMiddleware et soit journalisée avec la trace.
    """
    logger.error("Exception non gérée : %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Une erreur interne est survenue."},
    )


@app.get("/api/health", tags=["Santé"])
def health_check():
    """Vérifie que l'API est opérationnelle."""
    return {"status": "ok", "service": "CarteSync API", "version": "0.1.0", "env": settings.ENV}
