"""API Gateway principal - Punto de entrada de la aplicación"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
from contextlib import asynccontextmanager

from app.core.config import settings
from shared.database.connection import init_db, close_db, create_schema
from shared.cache.redis_client import init_redis, close_redis

# Configurar logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events de la aplicación"""
    # Startup
    logger.info("Iniciando aplicación...")
    await init_db()
    if settings.APP_ENV == "development":
        await create_schema()
    await init_redis()
    logger.info("Aplicación iniciada")
    yield
    # Shutdown
    logger.info("Cerrando aplicación...")
    await close_db()
    await close_redis()
    logger.info("Aplicación cerrada")


# Crear aplicación FastAPI
app = FastAPI(
    title="Tickets API",
    description="Ciclo de vida de tickets y validación por QR",
    version="1.0.0",
    lifespan=lifespan
)

# En desarrollo, permitir todos los orígenes para facilitar testing
if settings.APP_ENV == "development":
    logger.info("Modo desarrollo: CORS configurado para permitir todos los orígenes")
    allow_origins = ["*"]
    allow_credentials = False  # No se puede usar credentials con allow_origins=["*"]
else:
    allow_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]
    allow_credentials = True
    logger.info(f"CORS origins configurados: {allow_origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    max_age=3600,  # Cache preflight requests por 1 hora
)

# Incluir routers de cada servicio
from services.ticket_validation.routes.validation import router as validation_router
from services.ticket_purchase.routes.tickets import router as tickets_router
from services.ticket_purchase.routes.payments import router as payments_router

app.include_router(validation_router, prefix="/api/v1/tickets", tags=["validation"])
app.include_router(tickets_router, prefix="/api/v1/tickets", tags=["tickets"])
app.include_router(payments_router, prefix="/api/v1/payments", tags=["payments"])


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "ok", "service": "tickets-api"}


@app.get("/ready")
async def ready():
    """Ready check endpoint - verifica conexiones"""
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError
    from redis.exceptions import RedisError
    from shared.database.connection import get_session_maker
    from shared.cache.redis_client import get_redis

    try:
        async with get_session_maker()() as session:
            await session.execute(text("SELECT 1"))

        redis = await get_redis()
        await redis.ping()
    except (SQLAlchemyError, RedisError, RuntimeError, OSError) as e:
        logger.error(f"Ready check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "not ready", "error": str(e)})

    return {"status": "ready", "database": "connected", "redis": "connected"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.APP_DEBUG
    )
