"""
FastAPI 应用入口。

Usage:
    python run_api.py

Or directly:
    uvicorn agent_gateway.api.app:app --host 127.0.0.1 --port 8080
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agent_gateway import __version__
from agent_gateway.api.routers import chat_ws, openai_compat, sessions
from agent_gateway.api.service import ChatService, get_default_service
from agent_gateway.domain.exceptions import BusinessError, RateLimitError, SessionNotFoundError, ValidationError
from agent_gateway.infrastructure.logging.logger import log_event

# 这些错误的状态码对调用方有意义，原样返回；其余业务错误统一为 500
_PASSTHROUGH_ERRORS = (SessionNotFoundError, ValidationError, RateLimitError)


def create_app(service: Optional[ChatService] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.service = service or get_default_service()
        log_event(logging.INFO, "Gateway started", {"provider": app.state.service.provider.name})
        yield

    app = FastAPI(
        title="Agent Gateway",
        version=__version__,
        description="Conversational agent gateway with tool calling and streaming.",
        lifespan=lifespan,
    )
    if service is not None:
        app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BusinessError)
    async def business_error_handler(request: Request, exc: BusinessError):
        status = exc.http_status if isinstance(exc, _PASSTHROUGH_ERRORS) else 500
        log_event(
            logging.ERROR,
            "Request failed",
            {"path": request.url.path},
            code=exc.code,
            error=exc.message,
            http_status=status,
        )
        return JSONResponse(status_code=status, content={"error": exc.message, "code": exc.code})

    app.include_router(sessions.router)
    app.include_router(openai_compat.router)
    app.include_router(chat_ws.router)

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok", "version": __version__}

    return app


app = create_app()
