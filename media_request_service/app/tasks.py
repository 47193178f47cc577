import asyncio

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .cache import ListingCache
from .errors import StoreFailure
from .notifications import Notifier, dispatch_notifications
from .services import RequestService
from .settings import Settings

logger = structlog.get_logger(__name__)


async def run_low_demand_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    cache: ListingCache,
    notifier: Notifier,
    settings: Settings,
) -> int:
    """
    Один проход отклонения заявок с низким спросом с параметрами из настроек
    и рассылкой уведомлений затронутым пользователям.
    """
    async with session_factory() as session:
        service = RequestService(session, cache, settings)
        result = await service.sweep_low_demand()
    await dispatch_notifications(
        notifier, result.notifications, settings.notify_concurrency
    )
    return result.updated_count


async def low_demand_sweeper(
    session_factory: async_sessionmaker[AsyncSession],
    cache: ListingCache,
    notifier: Notifier,
    settings: Settings,
) -> None:
    """
    Периодически запускать отклонение заявок с низким спросом.
    Первый проход — сразу при старте, далее раз в
    low_demand_sweep_interval_seconds. Ошибка прохода не останавливает цикл.
    """
    while True:
        try:
            await run_low_demand_sweep(session_factory, cache, notifier, settings)
        except (StoreFailure, SQLAlchemyError, OSError):
            logger.exception("sweeper.run_failed")
        await asyncio.sleep(settings.low_demand_sweep_interval_seconds)
