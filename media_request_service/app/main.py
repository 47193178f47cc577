import asyncio
import contextlib
from typing import List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import schemas
from .cache import ListingCache
from .db import async_session_factory
from .deps import (
    Caller,
    get_caller,
    get_notifier,
    get_session,
    get_settings,
    require_admin,
)
from .errors import NotFoundError, StoreFailure
from .logging_setup import configure_logging
from .messaging import QueueNotifier
from .notifications import Notifier, dispatch_notifications
from .repositories import DuplicateKey
from .services import RequestService, get_request_service
from .settings import Settings, settings as default_settings
from .tasks import low_demand_sweeper

__all__ = ["app", "create_app", "get_session"]

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health", tags=["Техническое"], summary="Проверка здоровья")
async def health():
    """Возвращает статус готовности сервиса к обработке запросов."""
    return {"status": "ok"}


@router.post(
    "/requests",
    response_model=schemas.RequestOut,
    status_code=201,
    tags=["Заявки"],
    summary="Создать заявку",
    description=(
        "Создаёт заявку со статусом 'pending'. Если заявка с тем же "
        "(media_id, media_type, type) уже есть, счётчик группы увеличивается "
        "и записывается во все заявки группы."
    ),
)
async def create_request(
    body: schemas.CreateRequest,
    caller: Caller = Depends(get_caller),
    service: RequestService = Depends(get_request_service),
):
    """Создать заявку от имени вызывающего пользователя."""
    req = await service.submit_request(caller.user_id, body)
    return schemas.RequestOut.model_validate(req)


@router.get(
    "/requests",
    response_model=List[schemas.RequestOut],
    tags=["Заявки"],
    summary="Мои заявки",
    description="Возвращает заявки вызывающего пользователя, новые первыми.",
)
async def get_my_requests(
    caller: Caller = Depends(get_caller),
    service: RequestService = Depends(get_request_service),
):
    items = await service.user_requests(caller.user_id)
    return [schemas.RequestOut.model_validate(i) for i in items]


@router.get(
    "/admin/requests",
    response_model=schemas.RequestListing,
    tags=["Администрирование"],
    summary="Список заявок",
    description=(
        "Постраничный список заявок с фильтрами и сортировкой. "
        "Результат кэшируется на LISTING_CACHE_TTL_SECONDS."
    ),
    dependencies=[Depends(require_admin)],
)
async def list_requests(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    media_type: Optional[str] = Query(default=None, pattern="^(movie|tv|all)$"),
    request_type: Optional[str] = Query(default=None, pattern="^(add|update|fix|all)$"),
    sort_by: Optional[schemas.SortBy] = None,
    sort_order: schemas.SortOrder = "desc",
    service: RequestService = Depends(get_request_service),
):
    return await service.list_requests(
        page=page,
        limit=limit,
        media_type=media_type,
        request_type=request_type,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.delete(
    "/admin/requests",
    status_code=204,
    tags=["Администрирование"],
    summary="Удалить все заявки",
    description="Удаляет все заявки пачками и сбрасывает кэш списка.",
    dependencies=[Depends(require_admin)],
)
async def purge_requests(service: RequestService = Depends(get_request_service)):
    await service.purge_requests()
    return Response(status_code=204)


@router.put(
    "/admin/requests/update-batch",
    response_model=schemas.GroupStatusResult,
    tags=["Администрирование"],
    summary="Обновить статус группы заявок",
    description=(
        "Меняет статус всех заявок с тем же (media_id, media_type, type). "
        "Пользователи, у которых статус изменился, получают уведомление."
    ),
    dependencies=[Depends(require_admin)],
)
async def update_batch(
    body: schemas.GroupStatusUpdate,
    background_tasks: BackgroundTasks,
    service: RequestService = Depends(get_request_service),
    notifier: Notifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
):
    """Каскадная смена статуса для группы дубликатов."""
    key = DuplicateKey(body.media_id, body.media_type, body.type)
    result = await service.update_group_status(key, body.status, body.rejection_reason)
    background_tasks.add_task(
        dispatch_notifications,
        notifier,
        result.notifications,
        settings.notify_concurrency,
    )
    return schemas.GroupStatusResult(
        updated=result.updated_count,
        message=f"Updated {result.updated_count} requests",
    )


@router.put(
    "/admin/requests/{request_id}",
    response_model=schemas.RequestOut,
    tags=["Администрирование"],
    summary="Обновить статус заявки",
    description=(
        "Меняет статус одной заявки. Для заявки с дубликатами (counter > 1) "
        "изменение применяется ко всей группе."
    ),
    dependencies=[Depends(require_admin)],
)
async def patch_status(
    request_id: int,
    body: schemas.PatchStatus,
    background_tasks: BackgroundTasks,
    service: RequestService = Depends(get_request_service),
    notifier: Notifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
):
    result = await service.update_request_status(
        request_id, body.status, body.rejection_reason
    )
    background_tasks.add_task(
        dispatch_notifications,
        notifier,
        result.notifications,
        settings.notify_concurrency,
    )
    return schemas.RequestOut.model_validate(result.request)


@router.get(
    "/admin/requests/users",
    response_model=schemas.GroupUsers,
    tags=["Администрирование"],
    summary="Пользователи группы заявок",
    description="Возвращает авторов всех заявок с тем же (media_id, media_type, type).",
    dependencies=[Depends(require_admin)],
)
async def group_users(
    media_id: int,
    media_type: schemas.MediaType,
    type: schemas.RequestType,
    service: RequestService = Depends(get_request_service),
):
    users = await service.group_users(DuplicateKey(media_id, media_type, type))
    return schemas.GroupUsers(users=users)


@router.post(
    "/admin/requests/check-low-demand",
    response_model=schemas.SweepResult,
    tags=["Администрирование"],
    summary="Отклонить заявки с низким спросом",
    description=(
        "Отклоняет ожидающие заявки старше заданного числа часов со счётчиком "
        "ниже порога. Параметры по умолчанию берутся из настроек."
    ),
    dependencies=[Depends(require_admin)],
)
async def check_low_demand(
    background_tasks: BackgroundTasks,
    body: Optional[schemas.LowDemandSweep] = None,
    service: RequestService = Depends(get_request_service),
    notifier: Notifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
):
    body = body or schemas.LowDemandSweep()
    result = await service.sweep_low_demand(
        body.cutoff_hours, body.demand_threshold, body.message
    )
    background_tasks.add_task(
        dispatch_notifications,
        notifier,
        result.notifications,
        settings.notify_concurrency,
    )
    return schemas.SweepResult(updated=result.updated_count)


@router.post(
    "/admin/requests/clear-cache",
    tags=["Администрирование"],
    summary="Сбросить кэш списка заявок",
    dependencies=[Depends(require_admin)],
)
async def clear_cache(service: RequestService = Depends(get_request_service)):
    service.invalidate_listing_cache()
    return {"success": True, "message": "Cache cleared successfully"}


async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.detail})


async def store_failure_handler(request: Request, exc: Exception):
    logger.error(
        "store.failure",
        path=request.url.path,
        method=request.method,
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


def create_app(
    settings: Settings = default_settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """
    Собрать приложение: кэш списка, уведомитель и фоновые задачи
    создаются здесь и живут столько же, сколько приложение.
    """
    configure_logging(settings.log_level, settings.environment)

    app = FastAPI(
        title="Media Request Service",
        version="1.0.0",
        description=(
            "Сервис заявок на добавление, обновление и исправление фильмов и "
            "сериалов каталога: дедупликация заявок со счётчиком спроса, "
            "каскадная смена статуса, отклонение заявок с низким спросом."
        ),
    )
    app.state.settings = settings
    app.state.session_factory = session_factory or async_session_factory
    app.state.listing_cache = ListingCache(maxsize=settings.listing_cache_max_entries)
    app.state.notifier = notifier or QueueNotifier()
    app.state.sweeper = None

    app.include_router(router)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(StoreFailure, store_failure_handler)
    app.add_exception_handler(SQLAlchemyError, store_failure_handler)

    @app.on_event("startup")
    async def startup_event():
        app.state.listing_cache.start_reaper(settings.cache_reap_interval_seconds)
        if settings.low_demand_sweep_enabled:
            app.state.sweeper = asyncio.create_task(
                low_demand_sweeper(
                    app.state.session_factory,
                    app.state.listing_cache,
                    app.state.notifier,
                    settings,
                )
            )
        logger.info("app.startup", environment=settings.environment)

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.sweeper is not None:
            app.state.sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await app.state.sweeper
            app.state.sweeper = None
        await app.state.listing_cache.close()
        logger.info("app.shutdown")

    return app


app = create_app()
