from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from voice_agent.dependencies import VoiceServices, build_default_services
from voice_agent.logging.flight_recorder import register_log_middleware
from voice_agent.routes import chat, health, twilio, ws


def create_app(services: Optional[VoiceServices] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry = app.state.services.registry
        registry.start()
        try:
            yield
        finally:
            await registry.shutdown()

    app = FastAPI(title="Facility Voice Agent", version="0.1.0", lifespan=lifespan)
    app.state.services = services or build_default_services()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_log_middleware(app)

    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(twilio.router, prefix="/twilio", tags=["twilio"])
    app.include_router(ws.router, tags=["realtime"])
    app.include_router(chat.router, prefix="/chat", tags=["chat"])

    return app


app = create_app()
