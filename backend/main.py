"""
HeartLink — FastAPI application entry point.

Starts the device runtime (presence, mode arbiter, pulse scheduler, rate
publishing) on startup, serves the REST API and the WebSocket event stream.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, STORE_AUTH, STORE_URL, USER_ID, USER_NAME
from runtime import DeviceRuntime
from store.base import RemoteStore
from store.firebase import FirebaseStore
from store.memory import InMemoryStore

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_store() -> RemoteStore:
    if STORE_URL:
        logger.info(f"Using Firebase store at {STORE_URL}")
        return FirebaseStore(STORE_URL, auth_token=STORE_AUTH)
    logger.info("No store URL configured, using the in-process store")
    return InMemoryStore()


# --- Service singletons ---
store = create_store()
runtime = DeviceRuntime(store, USER_ID, USER_NAME)
ws_manager = ConnectionManager(snapshot=runtime.describe)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop the device runtime."""
    logger.info("Starting HeartLink services...")

    try:
        runtime.on_event(ws_manager.handle_event)
        await runtime.start()
        logger.info(f"HeartLink ready for {USER_ID}, API: {API_HOST}:{API_PORT}")

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down HeartLink services...")
        await runtime.stop()
        await store.close()


# --- FastAPI app ---
app = FastAPI(
    title="HeartLink",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inject services into routes
init_routes(runtime)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, beats: bool = True):
    await ws_manager.connect(websocket, beats=beats)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception as e:
        logger.debug(f"WebSocket error: {e}")
        await ws_manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
