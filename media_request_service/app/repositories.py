from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import AsyncIterator, Dict, Iterable, List, NamedTuple, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import StoreFailure
from .models import MediaRequest, RequestGroup, User, utcnow


class DuplicateKey(NamedTuple):
    """Ключ дубликата: заявки с одинаковым ключом образуют группу."""

    media_id: int
    media_type: str
    type: str


@dataclass(frozen=True)
class PriorState:
    """Снимок заявки до смены статуса (для решения об уведомлении)."""

    request_id: int
    user_id: str
    media_title: str
    status: str
    notify_whatsapp: bool

    @classmethod
    def of(cls, req: MediaRequest) -> "PriorState":
        return cls(
            request_id=req.id,
            user_id=req.user_id,
            media_title=req.media_title,
            status=req.status,
            notify_whatsapp=req.notify_whatsapp,
        )


def _group_filter(key: DuplicateKey) -> tuple:
    return (
        MediaRequest.media_id == key.media_id,
        MediaRequest.media_type == key.media_type,
        MediaRequest.type == key.type,
    )


def _status_values(status: str, reason: Optional[str]) -> dict:
    values = {"status": status}
    if status != "rejected":
        values["rejection_reason"] = ""
    elif reason:
        values["rejection_reason"] = reason
    return values


def _dialect_insert(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"upsert is not supported for dialect {dialect!r}")


@asynccontextmanager
async def _write(session: AsyncSession, operation: str) -> AsyncIterator[None]:
    """Выполнить запись в одной транзакции; при ошибке — откат и StoreFailure."""
    try:
        yield
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StoreFailure(operation) from exc


async def _increment_group(session: AsyncSession, key: DuplicateKey) -> int:
    """
    Атомарно создать агрегат группы (counter=1) либо увеличить его счётчик.
    Возвращает новое значение счётчика.
    """
    insert = _dialect_insert(session)
    stmt = insert(RequestGroup).values(
        media_id=key.media_id, media_type=key.media_type, type=key.type, counter=1
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["media_id", "media_type", "type"],
        set_={"counter": RequestGroup.counter + 1},
    ).returning(RequestGroup.counter)
    res = await session.execute(stmt)
    return res.scalar_one()


async def _lock_group(session: AsyncSession, key: DuplicateKey) -> None:
    # same row the submit upsert locks, so no duplicate lands mid-update
    await session.execute(
        select(RequestGroup.id)
        .where(
            RequestGroup.media_id == key.media_id,
            RequestGroup.media_type == key.media_type,
            RequestGroup.type == key.type,
        )
        .with_for_update()
    )


async def submit_request(session: AsyncSession, user_id: str, data: dict) -> MediaRequest:
    """
    Создать заявку с учётом дубликатов, в одной транзакции:
    1) увеличить счётчик агрегата группы (или создать его со значением 1)
    2) записать новый счётчик во все существующие заявки группы
    3) создать новую заявку с тем же счётчиком
    Возвращает созданную запись MediaRequest.
    """
    key = DuplicateKey(data["media_id"], data["media_type"], data["type"])
    async with _write(session, "submit_request"):
        counter = await _increment_group(session, key)
        if counter > 1:
            await session.execute(
                update(MediaRequest)
                .where(*_group_filter(key))
                .values(counter=counter)
                .execution_options(synchronize_session=False)
            )
        req = MediaRequest(**data, user_id=user_id, status="pending", counter=counter)
        session.add(req)
    await session.refresh(req)
    return req


async def get_request(session: AsyncSession, request_id: int) -> Optional[MediaRequest]:
    """Вернуть заявку по идентификатору или None."""
    res = await session.execute(select(MediaRequest).where(MediaRequest.id == request_id))
    return res.scalar_one_or_none()


async def get_user_requests(session: AsyncSession, user_id: str) -> List[MediaRequest]:
    """Вернуть все заявки пользователя (новые первыми)."""
    res = await session.execute(
        select(MediaRequest)
        .where(MediaRequest.user_id == user_id)
        .order_by(MediaRequest.created_at.desc(), MediaRequest.id.desc())
    )
    return list(res.scalars().all())


async def get_group_requests(session: AsyncSession, key: DuplicateKey) -> List[MediaRequest]:
    """Вернуть все заявки группы (по возрастанию id)."""
    res = await session.execute(
        select(MediaRequest).where(*_group_filter(key)).order_by(MediaRequest.id)
    )
    return list(res.scalars().all())


async def get_group_users(
    session: AsyncSession, key: DuplicateKey
) -> List[Tuple[MediaRequest, Optional[User]]]:
    """Заявки группы вместе с их авторами (автор может отсутствовать в справочнике)."""
    res = await session.execute(
        select(MediaRequest, User)
        .outerjoin(User, User.id == MediaRequest.user_id)
        .where(*_group_filter(key))
        .order_by(MediaRequest.created_at, MediaRequest.id)
    )
    return [(req, user) for req, user in res.all()]


async def list_requests(
    session: AsyncSession,
    *,
    page: int,
    limit: int,
    media_type: Optional[str] = None,
    request_type: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_order: str = "desc",
) -> Tuple[List[Tuple[MediaRequest, Optional[User]]], int]:
    """
    Страница заявок для админки с фильтрами по типу медиа и типу заявки.
    Сортировка: по дате создания (по умолчанию, новые первыми) или по счётчику.
    Возвращает (строки с автором, общее количество).
    """
    conditions = []
    if media_type and media_type != "all":
        conditions.append(MediaRequest.media_type == media_type)
    if request_type and request_type != "all":
        conditions.append(MediaRequest.type == request_type)

    column = MediaRequest.counter if sort_by == "counter" else MediaRequest.created_at
    if sort_by is None:
        ordering = column.desc()
    else:
        ordering = column.asc() if sort_order == "asc" else column.desc()

    stmt = (
        select(MediaRequest, User)
        .outerjoin(User, User.id == MediaRequest.user_id)
        .where(*conditions)
        .order_by(ordering, MediaRequest.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    count_stmt = select(func.count()).select_from(MediaRequest).where(*conditions)

    rows = (await session.execute(stmt)).all()
    total = (await session.execute(count_stmt)).scalar_one()
    return [(req, user) for req, user in rows], total


async def update_group_status(
    session: AsyncSession, key: DuplicateKey, status: str, reason: Optional[str]
) -> Tuple[List[PriorState], int]:
    """
    Сменить статус всех заявок группы одним UPDATE по фильтру.
    Агрегат группы блокируется, чтобы новая заявка не попала между чтением и записью.
    Возвращает (снимки заявок до изменения, число обновлённых строк).
    Пустой список означает, что группа не найдена.
    """
    async with _write(session, "update_group_status"):
        await _lock_group(session, key)
        res = await session.execute(
            select(MediaRequest).where(*_group_filter(key)).with_for_update()
        )
        prior = [PriorState.of(r) for r in res.scalars().all()]
        if not prior:
            return [], 0
        result = await session.execute(
            update(MediaRequest)
            .where(*_group_filter(key))
            .values(**_status_values(status, reason))
            .execution_options(synchronize_session=False)
        )
    return prior, result.rowcount


async def patch_status(
    session: AsyncSession, request_id: int, status: str, reason: Optional[str]
) -> Tuple[Optional[PriorState], Optional[MediaRequest]]:
    """
    Изменить статус одной заявки без дубликатов и при необходимости причину отказа.
    Агрегат группы блокируется, счётчик перечитывается под блокировкой.
    Возвращает:
    - (None, None), если заявка не найдена
    - (None, заявка), если у неё уже есть дубликаты (counter > 1): ничего не изменено,
      статус нужно менять у всей группы
    - (снимок до изменения, обновлённая заявка) в остальных случаях
    """
    async with _write(session, "patch_status"):
        res = await session.execute(
            select(MediaRequest.media_id, MediaRequest.media_type, MediaRequest.type).where(
                MediaRequest.id == request_id
            )
        )
        row = res.one_or_none()
        if row is None:
            return None, None
        await _lock_group(session, DuplicateKey(*row))
        res = await session.execute(
            select(MediaRequest)
            .where(MediaRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        req = res.scalar_one_or_none()
        if req is None:
            return None, None
        if req.counter > 1:
            return None, req
        prior = PriorState.of(req)
        for field, value in _status_values(status, reason).items():
            setattr(req, field, value)
    await session.refresh(req)
    return prior, req


async def sweep_low_demand(
    session: AsyncSession, cutoff_hours: int, demand_threshold: int, message: str
) -> List[PriorState]:
    """
    Отклонить ожидающие заявки старше cutoff_hours со счётчиком ниже demand_threshold.
    Один UPDATE ... RETURNING; возвращает снимки затронутых заявок
    (статус в снимке — прежний, 'pending').
    """
    cutoff = utcnow() - timedelta(hours=cutoff_hours)
    async with _write(session, "sweep_low_demand"):
        res = await session.execute(
            update(MediaRequest)
            .where(
                MediaRequest.status == "pending",
                MediaRequest.created_at < cutoff,
                MediaRequest.counter < demand_threshold,
            )
            .values(status="rejected", rejection_reason=message)
            .returning(
                MediaRequest.id,
                MediaRequest.user_id,
                MediaRequest.media_title,
                MediaRequest.notify_whatsapp,
            )
            .execution_options(synchronize_session=False)
        )
        rows = res.all()
    return [
        PriorState(
            request_id=row.id,
            user_id=row.user_id,
            media_title=row.media_title,
            status="pending",
            notify_whatsapp=row.notify_whatsapp,
        )
        for row in rows
    ]


async def purge_requests(session: AsyncSession, batch_size: int = 1000) -> int:
    """
    Удалить все заявки пачками по batch_size, затем агрегаты групп.
    Возвращает число удалённых заявок.
    """
    deleted = 0
    while True:
        async with _write(session, "purge_requests"):
            res = await session.execute(select(MediaRequest.id).limit(batch_size))
            ids = list(res.scalars().all())
            if ids:
                await session.execute(
                    delete(MediaRequest)
                    .where(MediaRequest.id.in_(ids))
                    .execution_options(synchronize_session=False)
                )
        if not ids:
            break
        deleted += len(ids)
    async with _write(session, "purge_request_groups"):
        await session.execute(delete(RequestGroup))
    return deleted


async def get_users(session: AsyncSession, user_ids: Iterable[str]) -> Dict[str, User]:
    """Справочник пользователей: вернуть найденных пользователей по id."""
    ids = set(user_ids)
    if not ids:
        return {}
    res = await session.execute(select(User).where(User.id.in_(ids)))
    return {u.id: u for u in res.scalars().all()}
