"""
FastAPI server for the home-services intake voice agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /incoming: TwiML for the Twilio voice webhook
- WS /connection: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import structlog
from twilio.twiml.voice_response import Connect, VoiceResponse
import uvicorn

from src.intake.config import get_config, init_config, ConfigError


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    errors: int = 0

    def to_dict(self, active_sessions: int = 0) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_sessions": active_sessions,
            "errors": self.errors,
        }


metrics = ServerMetrics()


def _active_sessions(app: FastAPI) -> int:
    sessions = getattr(app.state, "sessions", None)
    return len(sessions) if sessions is not None else 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting intake voice agent server...")

    from src.intake.availability import get_contractor_directory
    from src.intake.functions import build_capability_registry
    from src.intake.llm import initialize_llm
    from src.intake.session import SessionRegistry

    try:
        config = init_config()
        configure_logging(config.log_level)

        # Validate Groq model at startup
        await initialize_llm(config)

        directory = get_contractor_directory(config.contractors_file)
        app.state.capabilities = build_capability_registry(directory)
        app.state.sessions = SessionRegistry()

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            contractors=len(directory.contractors),
            capabilities=app.state.capabilities.names,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await app.state.sessions.close_all("shutdown")


app = FastAPI(
    title="Intake Voice Agent",
    description="Voice receptionist that matches callers with home-service contractors",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_sessions": _active_sessions(request.app),
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict(_active_sessions(request.app)))


@app.post("/incoming")
@app.get("/incoming")
async def incoming_call(request: Request) -> Response:
    """
    TwiML for the Twilio voice webhook.

    Connects the call's media stream to our WebSocket endpoint.
    """
    config = get_config()

    response = VoiceResponse()
    connect = Connect()
    connect.stream(url=config.ws_url)
    response.append(connect)

    logger.info("Generated TwiML", ws_url=config.ws_url)

    return Response(
        content=str(response),
        media_type="application/xml",
    )


@app.websocket("/connection")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One ConnectionSession per socket; the session is closed on stop,
    disconnect or error.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1

    from src.intake.session import ConnectionSession

    async def send_message(message: str) -> None:
        await websocket.send_text(message)

    session = None
    try:
        session = ConnectionSession(
            send_message,
            websocket.app.state.capabilities,
            registry=websocket.app.state.sessions,
        )
        logger.info(
            "WebSocket connected",
            session_id=session.session_id,
            active_sessions=len(websocket.app.state.sessions),
        )

        while not session.closed:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", session_id=session.session_id)
                break
            await session.handle_message(message)

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            session_id=session.session_id if session else None,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        if session:
            try:
                await session.close("transport closed")
            except Exception as e:
                logger.error("Error closing session", error=str(e))

        metrics.active_connections -= 1

        logger.info("Call ended", active_sessions=_active_sessions(websocket.app))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
