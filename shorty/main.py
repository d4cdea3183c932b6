import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from shorty import codes, crud, qr_utils, schemas
from shorty.database import Database

load_dotenv(Path(__file__).parent.parent / ".env")

ENVIRONMENT = os.getenv("ENVIRONMENT", "dev")
VERSION = "1.0.0"

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)
logger = logging.getLogger("shorty")


class APIError(Exception):
    def __init__(self, status_code: int, error: str):
        super().__init__(error)
        self.status_code = status_code
        self.error = error


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_db(database: Database = Depends(get_database)):
    db = database.session()
    try:
        yield db
    finally:
        db.close()


def public_base_url(request: Request) -> str:
    return os.getenv("PUBLIC_BASE_URL") or str(request.base_url).rstrip("/")


def track_click(database: Database, code: str) -> None:
    """Runs after the redirect has been sent; never raises."""
    db = database.session()
    try:
        crud.record_click(db, code)
    except Exception:
        logger.exception("Failed to increment clicks for %s", code)
    finally:
        db.close()


# ---------- API ----------
api = APIRouter()


@api.post("/links", response_model=schemas.LinkOut, status_code=status.HTTP_201_CREATED)
def create_link(link_in: schemas.LinkCreate, db=Depends(get_db)):
    target = link_in.target.strip() if link_in.target else link_in.target
    if not schemas.is_valid_target(target):
        raise APIError(status.HTTP_400_BAD_REQUEST, "invalid-target")
    try:
        link = codes.shorten(db, target, link_in.code)
    except codes.InvalidCode:
        raise APIError(status.HTTP_400_BAD_REQUEST, "invalid-code")
    except codes.CodeExists:
        raise APIError(status.HTTP_409_CONFLICT, "code-exists")
    except codes.CodeUnavailable:
        logger.error("No free code after %d attempts for target=%s", codes.MAX_ATTEMPTS, target)
        raise APIError(status.HTTP_409_CONFLICT, "code-unavailable")
    logger.info("Created link %s -> %s", link.code, link.target)
    return link


@api.get("/links", response_model=schemas.LinkList)
def list_links(db=Depends(get_db)):
    return {"links": crud.get_links(db)}


@api.get("/links/{code}", response_model=schemas.LinkOut)
def get_link(code: str, db=Depends(get_db)):
    link = crud.get_link(db, code)
    if not link:
        raise APIError(status.HTTP_404_NOT_FOUND, "not-found")
    return link


@api.delete("/links/{code}", response_model=schemas.MessageOut)
def delete_link(code: str, db=Depends(get_db)):
    if not crud.delete_link(db, code):
        raise APIError(status.HTTP_404_NOT_FOUND, "not-found")
    logger.info("Deleted link %s", code)
    return {"ok": True}


@api.get("/links/{code}/qr", response_model=schemas.QRCodeOut)
def link_qr_code(code: str, request: Request, db=Depends(get_db)):
    link = crud.get_link(db, code)
    if not link:
        raise APIError(status.HTTP_404_NOT_FOUND, "not-found")
    url = qr_utils.short_url(public_base_url(request), link.code)
    return {"code": link.code, "short_url": url, "qr_base64": qr_utils.generate_qr_base64(url)}


# Small config for the dashboard to know the public base URL
@api.get("/config", include_in_schema=False)
def get_config(request: Request):
    return {"public_base_url": public_base_url(request)}


# ---------- Health & redirect ----------
site = APIRouter()


@site.get("/healthz", response_model=schemas.HealthOut)
def healthz(database: Database = Depends(get_database)):
    if database.ping():
        return {"ok": True, "version": VERSION, "database": "ok"}
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"ok": False, "version": VERSION, "database": "unavailable"},
    )


# Must be registered last so it never shadows /api, /links or /healthz
@site.get("/{code}", include_in_schema=False)
def redirect(code: str, background_tasks: BackgroundTasks, db=Depends(get_db),
             database: Database = Depends(get_database)):
    if not codes.is_valid_code(code) or codes.is_reserved(code):
        raise APIError(status.HTTP_404_NOT_FOUND, "not-found")
    link = crud.get_link(db, code)
    if not link:
        raise APIError(status.HTTP_404_NOT_FOUND, "not-found")
    background_tasks.add_task(track_click, database, code)
    return RedirectResponse(url=link.target, status_code=status.HTTP_302_FOUND)


# ---------- Error rendering ----------
def _error(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error})


async def api_error_handler(request: Request, exc: APIError):
    return _error(exc.status_code, exc.error)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    # same order as create_link: the target is judged before the code
    locations = [err.get("loc", ()) for err in exc.errors()]
    if not any("target" in loc for loc in locations) and any("code" in loc for loc in locations):
        return _error(status.HTTP_400_BAD_REQUEST, "invalid-code")
    return _error(status.HTTP_400_BAD_REQUEST, "invalid-target")


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        return _error(exc.status_code, "not-found")
    if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
        return _error(exc.status_code, "method-not-allowed")
    return _error(exc.status_code, str(exc.detail))


async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Storage error on %s %s", request.method, request.url.path, exc_info=exc)
    if isinstance(exc, OperationalError):
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "storage-unavailable")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "server-error")


def create_app(database: Database | None = None, init_attempts: int | None = None,
               init_backoff: float | None = None) -> FastAPI:
    if init_attempts is None:
        init_attempts = int(os.getenv("DB_INIT_ATTEMPTS", 3))
    if init_backoff is None:
        init_backoff = float(os.getenv("DB_INIT_BACKOFF", 2))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = app.state.database
        ready = await run_in_threadpool(database.init, init_attempts, init_backoff)
        if not ready:
            raise RuntimeError(f"Database unavailable after {init_attempts} attempts")
        logger.info("Shorty %s started (env=%s)", VERSION, ENVIRONMENT)
        try:
            yield
        finally:
            database.close()

    app = FastAPI(
        title="Shorty",
        description="Shorten URLs, redirect by short code and count clicks.",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.database = database or Database()

    # --- CORS (allow the dashboard dev server, etc.) ---
    origins = ["*"] if ENVIRONMENT == "dev" else [
        os.getenv("FRONTEND_ORIGIN", "http://localhost:5173"),
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)

    app.include_router(api, prefix="/api")
    # Back-compat: same API without the /api prefix
    app.include_router(api, include_in_schema=False)
    app.include_router(site)
    return app


app = create_app()
