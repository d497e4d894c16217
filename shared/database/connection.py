"""Conexión a la base de datos"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
from typing import Optional
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

# Base para modelos SQLAlchemy
Base = declarative_base()

# Engine y session factory
engine = None
async_session_maker = None


def build_async_url(database_url: str) -> str:
    """Convertir la URL configurada a su driver async"""
    # Limpiar parámetros de la URL (se configuran en connect_args)
    if "?" in database_url and database_url.startswith("postgresql"):
        database_url = database_url.split("?")[0]

    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif database_url.startswith("postgresql+psycopg://"):
        database_url = database_url.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)
    elif database_url.startswith("sqlite://"):
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


async def init_db(database_url: Optional[str] = None):
    """Inicializar conexión a la base de datos"""
    global engine, async_session_maker

    if engine is not None:
        logger.warning("Database engine already initialized, skipping...")
        return

    database_url = build_async_url(database_url or settings.DATABASE_URL)
    logger.info(f"Using async driver: {database_url.split(':')[0]}")

    if database_url.startswith("sqlite"):
        # SQLite en memoria necesita una sola conexión compartida
        engine = create_async_engine(
            database_url,
            echo=settings.APP_DEBUG,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_async_engine(
            database_url,
            echo=settings.APP_DEBUG,
            pool_pre_ping=True,  # Verificar conexiones antes de usar
            pool_recycle=300,
            pool_timeout=30,
            pool_size=5,
            max_overflow=10,
        )

    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    logger.info("Database engine initialized successfully")


async def create_schema():
    """Crear tablas que no existan (desarrollo y tests)"""
    if engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    # Registrar modelos en el metadata
    from shared.database import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


def get_session_maker() -> async_sessionmaker:
    """Obtener la session factory inicializada"""
    if async_session_maker is None:
        logger.error("Database not initialized! Call init_db() first.")
        raise RuntimeError("Database not initialized. Please check application startup.")
    return async_session_maker


async def close_db():
    """Cerrar conexiones a la base de datos"""
    global engine, async_session_maker
    if engine:
        logger.info("Closing database connections...")
        await engine.dispose()
        engine = None
        async_session_maker = None
        logger.info("Database connections closed")
