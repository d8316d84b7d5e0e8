"""Main FastAPI application."""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import __version__
from app.api.dependencies import get_services
from app.api.endpoints import router
from app.utils.logging import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service graph before the first request."""
    services = get_services()
    logger.info(
        f"Hearth {__version__} ready - default provider: {services.conversations.config.provider}, "
        f"approval timeout: {services.conversations.config.approval_timeout_seconds:g}s"
    )
    yield
    logger.info("Hearth shutting down")


app = FastAPI(
    title="Hearth Calendar Assistant",
    description=(
        "A conversational assistant that manages a household's family, personal and work "
        "Google Calendars, with human approval for destructive actions."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "Chat",
            "description": "Stream assistant turns as Server-Sent Events.",
        },
        {
            "name": "Approvals",
            "description": "Approve or reject tool calls that need a human decision.",
        },
        {
            "name": "Calendars",
            "description": "Inspect a user's calendar mappings.",
        },
        {
            "name": "Health",
            "description": "Service health monitoring and status checks.",
        },
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
