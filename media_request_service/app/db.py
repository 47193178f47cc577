from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from .settings import settings

DATABASE_URL = settings.database_url


def _engine_options(url: str) -> dict:
    # pool/connect timeouts only apply to the asyncpg pool; sqlite uses a static pool
    if url.startswith("postgresql+asyncpg"):
        return {
            "pool_timeout": settings.db_command_timeout,
            "connect_args": {"command_timeout": settings.db_command_timeout},
        }
    return {}


def sync_database_url(url: str) -> str:
    """URL того же хранилища с синхронным драйвером по умолчанию (для миграций)."""
    parsed = make_url(url)
    return parsed.set(drivername=parsed.get_backend_name()).render_as_string(
        hide_password=False
    )


engine = create_async_engine(
    DATABASE_URL, echo=False, future=True, **_engine_options(DATABASE_URL)
)

async_session_factory = async_sessionmaker(
    bind=engine, expire_on_commit=False, class_=AsyncSession
)


class Base(DeclarativeBase):
    pass
