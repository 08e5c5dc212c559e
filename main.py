import time
import uvicorn
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from fastapi import FastAPI, Request, Depends, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram

from prometheus_fastapi_instrumentator import PrometheusFastApiInstrumentator

from starlette.middleware.trustedhost import TrustedHostMiddleware

from fastapi_limiter import FastAPILimiter

from memory_care.database.db import engine, get_db
from memory_care.database.models import Base
from memory_care.database.redis_db import redis_client

from memory_care.routes import (
    assignments,
    images,
    reports,
    sessions,
    users,
    websocket_events,
)
from memory_care.config.config import settings
from loguru import logger

from memory_care.services.logger import setup_logging

setup_logging()


api_description = """
**Memory Care API** - платформа оценки памяти пациентов по описаниям фотографий

---

Опекуны загружают фотографии с эталонными описаниями и собирают из них сессии,
пациенты описывают фотографии, внешний сервис оценивает описания, врачи
получают сводки и тренды по пациентам.
"""

app = FastAPI(
    title="Memory Care API",
    description=api_description,
    version="1.0.0",
    openapi_url="/openapi.json" if settings.app_env == "development" else None,
    docs_url="/docs" if settings.app_env == "development" else None,
    redoc_url="/redoc" if settings.app_env == "development" else None,
)


origins = settings.allowed_redirect_urls


PrometheusFastApiInstrumentator().instrument(app).expose(app, "/metrics")


REQUEST_COUNT = Counter("app_requests_total", "Total number of requests")
REQUEST_LATENCY = Histogram("app_request_latency_seconds", "Request latency")

# Middleware для CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Обработчики исключений
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def exception_handler(request: Request, exc: Exception):
    logger.error("An unhandled exception occurred", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal Server Error"},
    )


@app.exception_handler(ValueError)
async def validation_exception_handler(request: Request, exc: ValueError):
    logger.warning(f"Произошла ошибка валидации: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Произошла ошибка валидации", "error": str(exc)},
    )


# Маршруты
@app.get("/config")
def read_config():
    return {"ENV": settings.app_env}


@app.get("/", name="Корень")
def read_root():
    REQUEST_COUNT.inc()
    with REQUEST_LATENCY.time():
        return {"message": "Memory Care API"}


@app.get("/api/healthchecker")
async def healthchecker(db: AsyncSession = Depends(get_db)):
    REQUEST_COUNT.inc()
    with REQUEST_LATENCY.time():
        try:
            result = await db.execute(text("SELECT 1"))
            if result is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Database is not configured correctly",
                )
            return {"message": "Welcome to FastApi, database work correctly"}
        except Exception as e:
            logger.error("Database connection error", exc_info=e)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Error connecting to the database",
            )


app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)


# Middleware для добавления заголовка времени обработки
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["My-Process-Time"] = str(process_time)
    return response


async def custom_identifier(request: Request) -> str:
    return request.client.host


# Событие при старте приложения
@app.on_event("startup")
async def startup():
    logger.info("------------- STARTUP --------------")
    if settings.create_tables_on_startup:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")
    await FastAPILimiter.init(redis_client, identifier=custom_identifier)


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("------------- SHUTDOWN --------------")
    await engine.dispose()


app.include_router(users.router, prefix="/api")
app.include_router(assignments.router, prefix="/api")
app.include_router(images.router, prefix="/api")
app.include_router(sessions.router, prefix="/api")
app.include_router(reports.router, prefix="/api")
app.include_router(websocket_events.router, prefix="/api")

if __name__ == "__main__":
    uvicorn.run(
        app="main:app",
        host="0.0.0.0",
        port=8005,
        log_level="info",
        access_log=True,
        reload=settings.reload,
    )
