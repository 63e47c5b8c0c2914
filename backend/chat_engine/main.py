"""Community Chat Engine Application.

This is the main entry point for the community chat service. Members of a
community exchange messages in real time over WebSockets; moderation
(pin, delete, announce) and history are also available over REST.

Modules:
    - chat: rooms, sessions, permissions, message pipeline and router
    - community: community settings, memberships and login tokens
    - config: YAML configuration
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chat_engine import __version__
from chat_engine.chat.errors import ChatError
from chat_engine.chat.pipeline import MessagePipeline
from chat_engine.chat.registry import RoomRegistry
from chat_engine.chat.router import chat_error_handler, router as chat_router
from chat_engine.chat.store import MessageStore
from chat_engine.community.directory import CommunityDirectory
from chat_engine.config import get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every request; websockets logs every frame at debug.
for _noisy in (
    "httpx",
    "httpcore",
    "websockets",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = MessageStore.get_instance(config.storage.db_path)
    directory = CommunityDirectory.get_instance(config.storage.db_path)
    pipeline = MessagePipeline(store, max_content_length=config.chat.max_content_length)

    app.state.config = config
    app.state.store = store
    app.state.directory = directory
    app.state.pipeline = pipeline
    app.state.registry = RoomRegistry(directory, pipeline, config.chat)
    logger.info(
        f"Chat engine ready on http://{config.server.host}:{config.server.port} "
        f"(db={config.storage.db_path})"
    )

    yield  # Application runs here

    # Shutdown
    await app.state.registry.close_all()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Community Chat API",
    description="Real-time community chat with presence, typing, slowmode and moderation",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ChatError, chat_error_handler)
app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
