from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .cache import ListingCache
from .db import async_session_factory
from .notifications import Notifier
from .settings import Settings


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Зависимость FastAPI: выдаёт асинхронную сессию БД на время запроса."""
    async with async_session_factory() as session:
        yield session


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_listing_cache(request: Request) -> ListingCache:
    """Кэш списка заявок, созданный вместе с приложением."""
    return request.app.state.listing_cache


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


@dataclass(frozen=True)
class Caller:
    """Уже аутентифицированный вызывающий (определяется шлюзом перед сервисом)."""

    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_caller(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: str = Header(default="user"),
) -> Caller:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return Caller(user_id=x_user_id, role=x_user_role)


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    return caller
