"""Monitor de entregas: consulta estados en el transporte y reenvía fallidos."""

from __future__ import annotations

from datetime import datetime, timedelta

from leadrouter.core.config import Settings
from leadrouter.core.config import settings as default_settings
from leadrouter.core.logging import get_logger, log_event
from leadrouter.core.security import mask_phone
from leadrouter.models.lead import DeliveryLog
from leadrouter.repositories.base import iso, utcnow
from leadrouter.repositories.store import Datastore
from leadrouter.services.dispatcher import DeliveryFailedError, Dispatcher
from leadrouter.services.transports import TransportConfigError, TransportError

logger = get_logger(__name__)

RESEND_PREFIX = "[Reenvio] "
STALE_MESSAGE = "Mensagem pendente por muito tempo - possível número inválido"
MISSING_ID_MESSAGE = "Mensagem sem ID do transporte - possível falha no envio"

# Vocabulario del transporte -> estado interno.
STATUS_MAP = {
    "pending": "pending",
    "sent": "pending",
    "server": "pending",
    "delivered": "delivered",
    "device": "delivered",
    "read": "read",
    "played": "read",
    "failed": "failed",
    "error": "failed",
    "deleted": "failed",
}
_RANK = {"sent": 0, "pending": 0, "delivered": 1, "read": 2, "failed": 3}
_FINAL = ("read", "failed")


class DeliveryMonitorError(RuntimeError):
    """Operación de monitoreo no aplicable (registro inexistente, límite de reintentos)."""


class DeliveryLogNotFoundError(LookupError):
    pass


def map_status(raw: str | None) -> str:
    return STATUS_MAP.get((raw or "").strip().lower(), "pending")


class DeliveryMonitor:
    def __init__(
        self,
        store: Datastore | None = None,
        *,
        settings: Settings | None = None,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._store = store or Datastore(settings=self._settings)
        self._dispatcher = dispatcher or Dispatcher(self._store, settings=self._settings)

    async def _get(self, log_id: str) -> DeliveryLog:
        log = await self._store.delivery_logs.get(log_id)
        if log is None:
            raise DeliveryLogNotFoundError(log_id)
        return log

    async def _seller_token(self, log: DeliveryLog) -> str | None:
        if log.token_alias != "seller" or not log.seller_id:
            return None
        seller = await self._store.sellers.get(log.seller_id)
        return seller.whapi_token if seller else None

    async def _token_for(self, log: DeliveryLog) -> str:
        return self._dispatcher.whapi.token_for(log.token_alias, seller_token=await self._seller_token(log))

    def _is_stale(self, log: DeliveryLog, now: datetime) -> bool:
        if log.created_at is None:
            return False
        return log.created_at < now - timedelta(minutes=self._settings.delivery_stale_minutes)

    async def check_status(self, log_id: str, *, now: datetime | None = None) -> str:
        """Estado actual (`pending`, `delivered`, `read`, `failed`) tras consultar el transporte."""
        now = now or utcnow()
        log = await self._get(log_id)
        if log.status in _FINAL:
            return log.status

        metadata = dict(log.metadata)
        error_message: str | None = None
        if not log.message_id:
            status = "failed"
            error_message = MISSING_ID_MESSAGE
        elif log.channel == "gateway":
            try:
                raw = await self._dispatcher.whapi.get_status(await self._token_for(log), log.message_id)
            except TransportConfigError:
                raise
            except TransportError as exc:
                metadata["last_check_error"] = str(exc)
                status = "pending" if log.status == "sent" else log.status
            else:
                metadata["transport_status"] = raw
                status = map_status(raw)
                if status == "failed":
                    error_message = f"Transporte reportou falha ({raw})"
        else:
            # El canal oficial notifica por webhook; aquí sólo aplica la regla de antigüedad.
            status = "pending" if log.status == "sent" else log.status

        if status != "failed" and _RANK.get(status, 0) < _RANK.get(log.status, 0):
            status = log.status

        if status in ("pending", "sent") and self._is_stale(log, now):
            status = "failed"
            error_message = STALE_MESSAGE

        metadata["last_checked_at"] = iso(now)
        patch: dict[str, object] = {"status": status, "metadata": metadata}
        if error_message:
            patch["error_message"] = error_message
        await self._store.delivery_logs.update(log.id, patch)

        if status != log.status:
            log_event(
                logger,
                "delivery.status_changed",
                delivery_log_id=log.id,
                previous=log.status,
                current=status,
                reason=error_message,
            )
        if status == "failed" and log.status != "failed":
            await self._store.system_logs.record(
                "warning",
                "delivery_monitor",
                error_message or "Entrega falhou",
                {
                    "delivery_log_id": log.id,
                    "phone": mask_phone(log.phone_to),
                    "seller_id": log.seller_id,
                    "conversation_id": log.conversation_id,
                },
            )
        return status

    async def check_pending(self, *, limit: int | None = None, now: datetime | None = None) -> dict[str, int]:
        logs = await self._store.delivery_logs.list_unconfirmed(
            limit=limit or self._settings.delivery_check_batch_size
        )
        counts: dict[str, int] = {"checked": 0}
        for log in logs:
            status = await self.check_status(log.id, now=now)
            counts["checked"] += 1
            counts[status] = counts.get(status, 0) + 1
        log_event(logger, "delivery.batch_checked", **counts)
        return counts

    async def retry_failed(self, log_id: str, *, force: bool = False) -> DeliveryLog:
        """Reenvía el contenido original en un registro nuevo enlazado (`retry_of`)."""
        original = await self._get(log_id)
        if original.status != "failed" and not force:
            raise DeliveryMonitorError(f"Só é possível reenviar mensagens com falha (status={original.status})")
        if original.retry_count >= self._settings.delivery_max_retries:
            raise DeliveryMonitorError(
                f"Limite de {self._settings.delivery_max_retries} tentativas atingido"
            )

        content = original.content
        if not content.startswith(RESEND_PREFIX):
            content = f"{RESEND_PREFIX}{content}"
        seller_token = await self._seller_token(original)
        try:
            new_log = await self._dispatcher.send(
                channel=original.channel,
                phone=original.phone_to,
                content=content,
                token_alias=original.token_alias,
                message_type=original.message_type,
                media_url=original.media_url,
                seller_id=original.seller_id,
                seller_token=seller_token,
                conversation_id=original.conversation_id,
                retry_of=original.id,
                retry_count=original.retry_count + 1,
                metadata={**original.metadata, "original_error": original.error_message},
            )
        except DeliveryFailedError as exc:
            new_log = exc.log

        await self._store.system_logs.record(
            "info" if new_log.status != "failed" else "error",
            "retry_delivery",
            "Mensagem reenviada" if new_log.status != "failed" else "Reenvio falhou",
            {
                "original_id": original.id,
                "new_log_id": new_log.id,
                "retry_count": new_log.retry_count,
                "phone": mask_phone(original.phone_to),
            },
        )
        log_event(
            logger,
            "delivery.retried",
            original_id=original.id,
            new_log_id=new_log.id,
            status=new_log.status,
        )
        return new_log

    async def apply_status_event(self, message_id: str, raw_status: str, *, error: str | None = None) -> bool:
        """Estados empujados por webhook (canal oficial o gateway)."""
        status = map_status(raw_status)
        await self._store.messages.update_status(message_id, status)
        log = await self._store.delivery_logs.find_by_message_id(message_id)
        if log is None:
            return False
        if status != "failed" and log.status != "failed" and _RANK.get(status, 0) <= _RANK.get(log.status, 0):
            return True
        patch: dict[str, object] = {"status": status}
        if error:
            patch["error_message"] = error
        await self._store.delivery_logs.update(log.id, patch)
        log_event(logger, "delivery.status_event", delivery_log_id=log.id, previous=log.status, current=status)
        return True
