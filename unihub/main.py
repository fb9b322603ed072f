from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .routes import router as api_router, SessionRegistry
from .logging_setup import configure_logging
from .backend import build_backend
from .config import settings
from .cache import ping
import logging

# configure file logging for the app
configure_logging(level=settings.LOG_LEVEL)
logger = logging.getLogger("unihub.main")

app = FastAPI(title="UniNeeds Hub - Dispatch API")

# Enable CORS for UI dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/v1")


@app.on_event("startup")
async def _startup():
    logger.info("Starting UniNeeds Hub dispatch API")
    backend = await build_backend(settings)
    app.state.backend = backend
    app.state.registry = SessionRegistry(backend)
    logger.info("Backend ready: poll_interval=%ss", backend.poll_interval_sec)


@app.on_event("shutdown")
async def _shutdown():
    registry = getattr(app.state, "registry", None)
    if registry is not None:
        await registry.close()
        app.state.registry = None
    backend = getattr(app.state, "backend", None)
    if backend is not None:
        await backend.close()
        app.state.backend = None
    logger.info("Stopped UniNeeds Hub dispatch API")


@app.get("/")
async def read_root():
    return {"message": "UniNeeds Hub dispatch API"}


@app.get("/health")
async def health_check():
    backend = getattr(app.state, "backend", None)
    redis_ok = None
    if backend is not None and backend.redis is not None:
        redis_ok = await ping(backend.redis)
    return {"status": "ok" if backend is not None else "starting", "redis": redis_ok}
