"""Main FastAPI application for the Popdarts session core."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import init_db, close_db, async_session, local_session
from .routers import auth_router, notifications_router, devices_router
from .services.session_core import build_core
from .services.websocket_manager import snapshot_message

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info("Starting Popdarts session core")

    await init_db()
    logger.info("Database initialized")

    core = build_core(settings, local_session, async_session)
    await core.start()
    app.state.core = core
    logger.info(f"Session restored: {core.manager.state.value}")

    yield

    await core.stop()
    await close_db()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Popdarts Session",
        description="Authentication session and push registration for the Popdarts app",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict to your domain
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)
    app.include_router(notifications_router)
    app.include_router(devices_router)

    @app.websocket("/ws")
    async def auth_stream(websocket: WebSocket):
        """Stream auth state changes and shell requests to the client."""
        core = websocket.app.state.core
        await core.connections.connect(websocket)
        try:
            await websocket.send_json(snapshot_message(core.manager.snapshot()))
            while True:
                # Clients only listen; reads keep the connection alive
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await core.connections.disconnect(websocket)

    @app.get("/health")
    async def health_check():
        core = app.state.core
        return {
            "status": "healthy",
            "auth_state": core.manager.state.value,
            "connections": core.connections.connection_count,
        }

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
