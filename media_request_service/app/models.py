from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Boolean, Integer, String, Text, DateTime, Index, UniqueConstraint
from datetime import datetime, timezone
from typing import Optional
from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MediaRequest(Base):
    """
    Модель заявки пользователя на действие с медиа-контентом каталога.
    Поля:
    - user_id: пользователь, создавший заявку
    - type: тип заявки ('add' | 'update' | 'fix')
    - media_id / media_type: элемент внешнего каталога ('movie' | 'tv')
    - media_title / media_poster: данные для отображения, копируются при создании
    - status: 'pending' | 'in_progress' | 'completed' | 'rejected'
    - counter: число заявок с тем же ключом дубликата, одинаковое у всех строк группы
    - rejection_reason: причина отказа (только для 'rejected')
    - notify_whatsapp: уведомлять ли пользователя о смене статуса
    - created_at / updated_at: отметки времени
    Ключ дубликата: (media_id, media_type, type).
    """

    __tablename__ = "requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(100), index=True)
    type: Mapped[str] = mapped_column(String(10))  # 'add' | 'update' | 'fix'
    media_id: Mapped[int] = mapped_column(Integer)
    media_type: Mapped[str] = mapped_column(String(10))  # 'movie' | 'tv'
    media_title: Mapped[str] = mapped_column(String(500))
    media_poster: Mapped[Optional[str]] = mapped_column(String(1000))
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    counter: Mapped[int] = mapped_column(Integer, default=1)
    rejection_reason: Mapped[str] = mapped_column(Text, default="")
    notify_whatsapp: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_requests_duplicate_key", "media_id", "media_type", "type"),
    )


class RequestGroup(Base):
    """
    Агрегат группы дубликатов: одна строка на ключ (media_id, media_type, type).
    Хранит эталонное значение счётчика; строки заявок — его дочерние записи.
    """

    __tablename__ = "request_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    media_id: Mapped[int] = mapped_column(Integer, nullable=False)
    media_type: Mapped[str] = mapped_column(String(10), nullable=False)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    counter: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("media_id", "media_type", "type", name="uq_request_group_key"),
    )


class User(Base):
    """
    Справочник пользователей (только чтение в этом сервисе).
    - whatsapp: адрес для уведомлений, если пользователь его указал
    - role: 'user' | 'admin'
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    email: Mapped[str] = mapped_column(String(320), unique=True)
    whatsapp: Mapped[Optional[str]] = mapped_column(String(32))
    role: Mapped[str] = mapped_column(String(20), default="user")
