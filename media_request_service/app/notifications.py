import asyncio
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

import structlog

from .models import User
from .repositories import PriorState

logger = structlog.get_logger(__name__)

STATUS_MESSAGES: Dict[str, str] = {
    "pending": "Sua solicitação está pendente de análise.",
    "in_progress": "Sua solicitação está em análise pela nossa equipe.",
    "completed": "Sua solicitação foi concluída com sucesso!",
}
REJECTED_WITH_REASON = "Sua solicitação foi rejeitada. Motivo: {reason}"
REJECTED_WITHOUT_REASON = (
    "Sua solicitação foi rejeitada. Entre em contato para mais informações."
)


class Notifier(Protocol):
    async def send(self, address: str, message: str) -> bool: ...


@dataclass(frozen=True)
class Notification:
    request_id: int
    user_id: str
    address: str
    message: str


def status_label(status: str, reason: Optional[str] = None) -> str:
    """Локализованная (pt-BR) подпись статуса; для отказа — с причиной."""
    if status == "rejected":
        if reason:
            return REJECTED_WITH_REASON.format(reason=reason)
        return REJECTED_WITHOUT_REASON
    return STATUS_MESSAGES.get(status, status)


def build_status_message(
    user_name: str, media_title: str, status: str, reason: Optional[str] = None
) -> str:
    return (
        "*Atualização de Solicitação*\n\n"
        f"Olá {user_name},\n\n"
        f'Sua solicitação para "{media_title}" teve o status atualizado para: '
        f"*{status_label(status, reason)}*\n\n"
        "Acesse a plataforma para mais detalhes."
    )


def build_notifications(
    prior: Iterable[PriorState],
    new_status: str,
    reason: Optional[str],
    users: Mapping[str, User],
) -> List[Notification]:
    """
    Уведомления для заявок, у которых статус действительно изменился,
    включено уведомление и у автора есть адрес WhatsApp.
    """
    result = []
    for state in prior:
        if state.status == new_status or not state.notify_whatsapp:
            continue
        user = users.get(state.user_id)
        if user is None or not user.whatsapp:
            continue
        result.append(
            Notification(
                request_id=state.request_id,
                user_id=state.user_id,
                address=user.whatsapp,
                message=build_status_message(
                    user.name, state.media_title, new_status, reason
                ),
            )
        )
    return result


def recipients(prior: Iterable[PriorState], new_status: str) -> List[str]:
    """id пользователей, которых может понадобиться уведомить."""
    return sorted(
        {s.user_id for s in prior if s.status != new_status and s.notify_whatsapp}
    )


async def dispatch_notifications(
    notifier: Notifier, notifications: List[Notification], concurrency: int = 8
) -> int:
    """
    Разослать уведомления с ограниченной параллельностью.
    Ошибка одного уведомления логируется и не влияет на остальные.
    Возвращает число успешно переданных уведомлений.
    """
    if not notifications:
        return 0
    semaphore = asyncio.Semaphore(concurrency)

    async def _send_one(item: Notification) -> bool:
        async with semaphore:
            try:
                ok = await notifier.send(item.address, item.message)
            except Exception:
                logger.exception(
                    "notifications.send_failed",
                    request_id=item.request_id,
                    user_id=item.user_id,
                )
                return False
        if not ok:
            logger.warning(
                "notifications.not_delivered",
                request_id=item.request_id,
                user_id=item.user_id,
            )
        return bool(ok)

    results = await asyncio.gather(*(_send_one(n) for n in notifications))
    sent = sum(1 for r in results if r)
    logger.info(
        "notifications.dispatched", total=len(notifications), sent=sent
    )
    return sent
