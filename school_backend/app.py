"""
FastAPI application entry point for the school backend.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from school_backend.config import get_settings
from school_backend.errors import PersistenceError
from school_backend.realtime import ws_router
from school_backend.routes import router


async def persistence_error_handler(request: Request, exc: PersistenceError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="School App Backend", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.add_exception_handler(PersistenceError, persistence_error_handler)
    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(ws_router, prefix=settings.api_prefix)
    return app


app = create_app()
