"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (OpenAI client, adapters)
- Register routes
"""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from openai import AsyncOpenAI

from adapters.registry import AdapterSet, build_openai_adapters
from config import AppConfig
from errors import ConfigurationError
from observability.logger import log_event
from server.routes import register_routes


def create_app(
    config: AppConfig | None = None,
    adapters: AdapterSet | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    config defaults to AppConfig.load_from_env(). adapters defaults to the
    OpenAI-backed set, which needs OPENAI_API_KEY; tests inject fakes.

    Raises:
        ConfigurationError if configuration is invalid.
    """
    config = config or AppConfig.load_from_env()

    app = FastAPI(title="Voice Session API")
    app.state.config = config

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if adapters is None:
        # One OpenAI client per process, shared by every session
        adapters = build_openai_adapters(config, build_openai_client(config))
    app.state.adapters = adapters

    register_routes(app)

    log_event({
        "event_type": "APP_STARTED",
        "env": config.env,
        "transcription_model": config.transcription_model,
        "generation_model": config.generation_model,
        "synthesis_model": config.synthesis_model,
        "synthesis_streaming": adapters.synthesis.streaming,
    })
    return app


def build_openai_client(config: AppConfig) -> AsyncOpenAI:
    """Build the process-wide OpenAI client."""
    if not config.openai_api_key:
        raise ConfigurationError("OPENAI_API_KEY environment variable not set")

    if config.openai_base_url:
        return AsyncOpenAI(
            api_key=config.openai_api_key,
            base_url=config.openai_base_url,
        )
    return AsyncOpenAI(api_key=config.openai_api_key)
