from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from knowledge_scout.config import get_settings
from knowledge_scout.db import create_schema, get_engine
from knowledge_scout.errors import ScoutError
from knowledge_scout.logging_setup import setup_logging
from knowledge_scout.routes import admin_router, ask_router, docs_router

logger = logging.getLogger(__name__)

_HTTP_ERROR_CODES = {
    400: "invalid_input",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    413: "file_too_large",
}


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    setup_logging()
    engine = get_engine()
    if get_settings().create_schema:
        create_schema(engine)
    logger.info("api started database=%s", engine.url.render_as_string(hide_password=True))
    yield


app = FastAPI(title="Knowledge Scout API", version="0.1.0", lifespan=lifespan)


@app.exception_handler(ScoutError)
async def scout_error_handler(_: Request, exc: ScoutError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("request failed error=%s detail=%s", exc.code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": _HTTP_ERROR_CODES.get(exc.status_code, "http_error"), "detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": str(error.get("msg", ""))}
        for error in exc.errors()
    ]
    detail = "; ".join(f"{'.'.join(error['loc'])}: {error['msg']}" for error in errors)
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_input", "detail": detail or "invalid request", "errors": errors},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(_: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "detail": "internal server error"},
    )


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(docs_router)
app.include_router(ask_router)
app.include_router(admin_router)


def run() -> None:
    import uvicorn

    uvicorn.run("knowledge_scout.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
