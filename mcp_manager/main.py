"""FastAPI application for the MCP manager."""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables FIRST - before any other imports
load_dotenv()

# ruff: noqa: E402
from fastapi import FastAPI

from mcp_manager.config import get_settings
from mcp_manager.database import get_session_factory
from mcp_manager.database import initialize_database
from mcp_manager.providers.factory import ProviderFactory
from mcp_manager.routers.health import router as health_router
from mcp_manager.routers.mcp import router as mcp_router

_settings = get_settings()

_log_level_name = _settings.log_level.upper()
try:
    _log_level = getattr(logging, _log_level_name)
except AttributeError:
    _log_level = logging.INFO


# Custom formatter that displays structured fields from 'extra' dict
class StructuredFormatter(logging.Formatter):
    """Formatter that renders structured fields for grep-able logs.

    For logs with 'extra' dict, formats as:
        2025-12-15 03:19:33 INFO Connection created organization_id=org-1 provider=custom
    """

    BUILTIN_ATTRS = {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    }

    def format(self, record):
        parts = [
            self.formatTime(record, "%Y-%m-%d %H:%M:%S"),
            record.levelname,
            record.getMessage(),
        ]

        extra_fields = []
        for key, value in record.__dict__.items():
            if key not in self.BUILTIN_ATTRS and not key.startswith("_"):
                if isinstance(value, str) and len(value) > 50:
                    value_str = value[:47] + "..."
                else:
                    value_str = str(value)
                extra_fields.append(f"{key}={value_str}")

        if extra_fields:
            parts.append(" ".join(extra_fields))

        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))

        return " ".join(parts)


def configure_logging(level: int = _log_level) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove any existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(handler)

    # HTTP client debug can be extremely verbose in dev
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and build the provider registry once per process."""
    settings = get_settings()
    initialize_database()
    app.state.provider_factory = ProviderFactory(settings, get_session_factory())
    logger.info(f"MCP Manager started on port {settings.port}")
    yield
    logger.info("MCP Manager shutting down")


app = FastAPI(title="MCP Manager", lifespan=lifespan)
app.include_router(health_router)
app.include_router(mcp_router)
