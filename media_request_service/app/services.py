from dataclasses import dataclass, field
from typing import List, Optional

import structlog
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from . import repositories as repo
from . import schemas
from .cache import ListingCache
from .deps import get_listing_cache, get_session, get_settings
from .errors import NotFoundError
from .models import MediaRequest
from .notifications import Notification, build_notifications, recipients
from .repositories import DuplicateKey, PriorState
from .settings import Settings, settings as default_settings

logger = structlog.get_logger(__name__)

LISTING_TAG = "listing"
LISTING_PREFIX = "admin:requests:"


@dataclass
class StatusUpdateResult:
    updated_count: int
    notifications: List[Notification] = field(default_factory=list)
    request: Optional[MediaRequest] = None


def listing_cache_key(
    page: int,
    limit: int,
    media_type: Optional[str],
    request_type: Optional[str],
    sort_by: Optional[str],
    sort_order: str,
) -> str:
    return (
        f"{LISTING_PREFIX}{page}:{limit}:{media_type or 'all'}:"
        f"{request_type or 'all'}:{sort_by or 'none'}:{sort_order}"
    )


class RequestService:
    """
    Операции над заявками: создание с учётом дубликатов, смена статуса группы,
    отклонение заявок с низким спросом и кэшируемый список для админки.
    Уведомления не отправляются здесь, а возвращаются вызывающему для рассылки.
    """

    def __init__(
        self,
        session: AsyncSession,
        cache: ListingCache,
        settings: Settings = default_settings,
    ):
        self._session = session
        self._cache = cache
        self._settings = settings

    async def submit_request(
        self, user_id: str, body: schemas.CreateRequest
    ) -> MediaRequest:
        req = await repo.submit_request(self._session, user_id, body.model_dump())
        self.invalidate_listing_cache()
        logger.info(
            "requests.submit.created",
            request_id=req.id,
            user_id=user_id,
            media_id=req.media_id,
            media_type=req.media_type,
            type=req.type,
            counter=req.counter,
        )
        return req

    async def user_requests(self, user_id: str) -> List[MediaRequest]:
        return await repo.get_user_requests(self._session, user_id)

    async def update_group_status(
        self, key: DuplicateKey, status: str, rejection_reason: Optional[str] = None
    ) -> StatusUpdateResult:
        """
        Сменить статус у всех заявок группы, подготовить уведомления
        для тех, у кого статус действительно изменился, и сбросить кэш списка.
        """
        prior, updated = await repo.update_group_status(
            self._session, key, status, rejection_reason
        )
        if not prior:
            raise NotFoundError("No matching requests found")
        notifications = await self._notifications_for(prior, status, rejection_reason)
        self.invalidate_listing_cache()
        logger.info(
            "requests.group_status.updated",
            media_id=key.media_id,
            media_type=key.media_type,
            type=key.type,
            status=status,
            updated=updated,
            notifications=len(notifications),
        )
        return StatusUpdateResult(updated_count=updated, notifications=notifications)

    async def update_request_status(
        self, request_id: int, status: str, rejection_reason: Optional[str] = None
    ) -> StatusUpdateResult:
        """
        Сменить статус одной заявки. Если у заявки есть дубликаты (counter > 1),
        изменение применяется ко всей группе.
        """
        req = await repo.get_request(self._session, request_id)
        if req is None:
            raise NotFoundError("Request not found")

        if req.counter == 1:
            prior, req = await repo.patch_status(
                self._session, request_id, status, rejection_reason
            )
            if req is None:
                raise NotFoundError("Request not found")
            if prior is not None:
                notifications = await self._notifications_for(
                    [prior], status, rejection_reason
                )
                self.invalidate_listing_cache()
                logger.info(
                    "requests.status.updated",
                    request_id=request_id,
                    status=status,
                    notifications=len(notifications),
                )
                return StatusUpdateResult(
                    updated_count=1, notifications=notifications, request=req
                )
            # a duplicate was submitted after the first read
            logger.info("requests.status.duplicate_appeared", request_id=request_id)

        key = DuplicateKey(req.media_id, req.media_type, req.type)
        result = await self.update_group_status(key, status, rejection_reason)
        await self._session.refresh(req)
        result.request = req
        return result

    async def sweep_low_demand(
        self,
        cutoff_hours: Optional[int] = None,
        demand_threshold: Optional[int] = None,
        message: Optional[str] = None,
    ) -> StatusUpdateResult:
        """
        Отклонить ожидающие заявки с низким спросом. Параметры по умолчанию
        берутся из настроек.
        """
        if cutoff_hours is None:
            cutoff_hours = self._settings.low_demand_rejection_hours
        if demand_threshold is None:
            demand_threshold = self._settings.high_demand_threshold
        if not message:
            message = self._settings.low_demand_rejection_message

        prior = await repo.sweep_low_demand(
            self._session, cutoff_hours, demand_threshold, message
        )
        notifications: List[Notification] = []
        if prior:
            if self._settings.sweep_notify:
                notifications = await self._notifications_for(
                    prior, "rejected", message
                )
            self.invalidate_listing_cache()
        logger.info(
            "requests.low_demand.swept",
            cutoff_hours=cutoff_hours,
            demand_threshold=demand_threshold,
            updated=len(prior),
        )
        return StatusUpdateResult(updated_count=len(prior), notifications=notifications)

    async def list_requests(
        self,
        page: int = 1,
        limit: int = 10,
        media_type: Optional[str] = None,
        request_type: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_order: str = "desc",
    ) -> dict:
        """Страница заявок для админки; результат кэшируется по набору фильтров."""
        key = listing_cache_key(page, limit, media_type, request_type, sort_by, sort_order)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        rows, total = await repo.list_requests(
            self._session,
            page=page,
            limit=limit,
            media_type=media_type,
            request_type=request_type,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        items = [
            schemas.AdminRequestOut(
                **schemas.RequestOut.model_validate(req).model_dump(),
                user=schemas.UserBrief.model_validate(user) if user else None,
            )
            for req, user in rows
        ]
        result = schemas.RequestListing(
            items=items,
            total=total,
            has_more=(page - 1) * limit + limit < total,
        ).model_dump(mode="json")
        self._cache.set(
            key, result, self._settings.listing_cache_ttl_seconds, tags=(LISTING_TAG,)
        )
        return result

    async def group_users(self, key: DuplicateKey) -> List[schemas.GroupUserOut]:
        rows = await repo.get_group_users(self._session, key)
        users = []
        for req, user in rows:
            if user is None:
                logger.warning(
                    "requests.group_users.unknown_user",
                    request_id=req.id,
                    user_id=req.user_id,
                )
                continue
            users.append(
                schemas.GroupUserOut(
                    id=user.id,
                    name=user.name,
                    email=user.email,
                    status=req.status,
                    request_id=req.id,
                    created_at=req.created_at,
                )
            )
        return users

    async def purge_requests(self) -> int:
        deleted = await repo.purge_requests(self._session)
        self.invalidate_listing_cache()
        logger.info("requests.purged", deleted=deleted)
        return deleted

    def invalidate_listing_cache(self) -> int:
        """Сбросить все закэшированные страницы списка заявок."""
        removed = self._cache.invalidate_tag(LISTING_TAG)
        removed += self._cache.delete(f"{LISTING_PREFIX}*")
        return removed

    async def _notifications_for(
        self, prior: List[PriorState], status: str, reason: Optional[str]
    ) -> List[Notification]:
        user_ids = recipients(prior, status)
        if not user_ids:
            return []
        users = await repo.get_users(self._session, user_ids)
        return build_notifications(prior, status, reason, users)


async def get_request_service(
    session: AsyncSession = Depends(get_session),
    cache: ListingCache = Depends(get_listing_cache),
    settings: Settings = Depends(get_settings),
) -> RequestService:
    return RequestService(session, cache, settings)
