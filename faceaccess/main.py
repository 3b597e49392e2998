# faceaccess/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles

from .config import API_PREFIX, CORS_ALLOW_ORIGINS, LOG_LEVEL, MATCH_THRESHOLD, REQUIRE_LIVENESS, UPLOADS_URL_PREFIX
from .errors import FaceAccessError, StorageError
from .face_utils import FaceAnalyzer
from .photos import PhotoStorage
from .routes.recognition_routes import router as recognition_router
from .routes.user_routes import router as user_router
from .storage import UserStore, create_store

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)


# ==============================================================================
# SECTION 1: LIFECYCLE
# ==============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.store is None:
        app.state.store = create_store()
    logger.info(f"Using {app.state.store.describe()} user store")
    if not app.state.analyzer.ready:
        app.state.analyzer.load_in_background()
    yield
    app.state.store.close()


# ==============================================================================
# SECTION 2: APPLICATION
# ==============================================================================
def create_app(
    store: Optional[UserStore] = None,
    analyzer: Optional[FaceAnalyzer] = None,
    photos: Optional[PhotoStorage] = None,
    threshold: float = MATCH_THRESHOLD,
    require_liveness: bool = REQUIRE_LIVENESS,
) -> FastAPI:
    """
    Build the API. Components left as None are created from config; the
    store is opened and the face model loaded when the app starts.
    """
    app = FastAPI(title="FaceAccess - Face Registration and Recognition API", lifespan=lifespan)
    app.state.store = store
    app.state.analyzer = analyzer or FaceAnalyzer()
    app.state.photos = photos or PhotoStorage()
    app.state.threshold = threshold
    app.state.require_liveness = require_liveness

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FaceAccessError)
    async def handle_face_access_error(request: Request, exc: FaceAccessError):
        if isinstance(exc, StorageError):
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}", exc_info=exc)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})

    @app.get(f"{API_PREFIX}/health", tags=["Health"])
    def health_check(request: Request):
        state = request.app.state
        return {
            "status": "ok",
            "modelsLoaded": state.analyzer.ready,
            "database": state.store.describe() if state.store is not None else "disconnected",
        }

    app.include_router(recognition_router, prefix=API_PREFIX)
    app.include_router(user_router, prefix=API_PREFIX)
    app.mount(UPLOADS_URL_PREFIX, StaticFiles(directory=str(app.state.photos.root)), name="uploads")

    @app.get("/", tags=["Root"])
    def read_root():
        return {"message": "Welcome to the FaceAccess API"}

    @app.get("/favicon.ico", include_in_schema=False)
    async def favicon():
        return Response(status_code=204)

    return app


app = create_app()
