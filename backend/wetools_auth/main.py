import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

from wetools_auth.api.v1.api import router
from wetools_auth.controllers.session_recovery import SessionRecoveryManager
from wetools_auth.core.client_storage import ClientStorage
from wetools_auth.core.config import settings
from wetools_auth.core.errors import AuthFlowError, TokenInvalidOrExpired
from wetools_auth.core.sdk_loader import sdk_loader
from wetools_auth.db.database import engine, get_db, session_scope

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: warm up DB pool. Shutdown: close SDK clients, dispose engine."""
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    yield
    await sdk_loader.aclose()
    await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)


# ── Exception Handlers ────────────────────────────────────────

@app.exception_handler(TokenInvalidOrExpired)
async def token_error_handler(request: Request, exc: TokenInvalidOrExpired):
    """A bad token anywhere purges the client's auth state as a side effect."""
    response = JSONResponse(
        status_code=exc.status_code,
        content={"kind": exc.kind.value, "detail": exc.detail},
    )
    storage = ClientStorage.from_request(request)
    try:
        async with session_scope() as db:
            await SessionRecoveryManager(storage, db).purge_all_auth_artifacts()
    except SQLAlchemyError as db_exc:
        logger.error("Backend sign-out during purge failed: %s", db_exc)
        storage.purge_auth_keys()
    storage.apply(response)
    return response


@app.exception_handler(AuthFlowError)
async def auth_flow_error_handler(request: Request, exc: AuthFlowError):
    logger.warning("%s: %s", exc.kind.value, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"kind": exc.kind.value, "detail": exc.detail},
    )


# Ensures 500s return JSON through CORS
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# ── Middleware ────────────────────────────────────────────────

# SessionMiddleware holds CSRF state, login origin and the attempt marker
app.add_middleware(SessionMiddleware, secret_key=settings.SECRET_KEY)

ALLOWED_ORIGINS = [
    # Development
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
    # Production
    settings.FRONTEND_ORIGIN,
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ───────────────────────────────────────────────────

app.include_router(router, prefix=settings.API_V1_STR)


# ── Health / Root ─────────────────────────────────────────────

@app.get("/")
def read_root():
    return {"message": "Welcome to the WeTools Auth API"}


@app.get("/db_check")
async def db_check(db: AsyncSession = Depends(get_db)):
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {
            "status": "unhealthy",
            "database": "disconnected",
            "error": str(e),
        }
