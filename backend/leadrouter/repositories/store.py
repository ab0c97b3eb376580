"""Agrupa los repositorios de Supabase para inyectarlos en los servicios."""

from __future__ import annotations

import httpx

from leadrouter.core.config import Settings
from leadrouter.core.config import settings as default_settings
from leadrouter.repositories.conversations import ConversationsRepository, MessagesRepository
from leadrouter.repositories.leads import LeadsRepository, SellersRepository
from leadrouter.repositories.logs import (
    DeliveryLogsRepository,
    SystemLogsRepository,
    UserRolesRepository,
)
from leadrouter.repositories.message_queue import MessageQueueRepository


class Datastore:
    """Acceso a todas las tablas del núcleo con la misma configuración y transporte."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        cfg = settings or default_settings
        kwargs = {"settings": cfg, "transport": transport}
        self.conversations = ConversationsRepository(**kwargs)
        self.messages = MessagesRepository(**kwargs)
        self.queue = MessageQueueRepository(**kwargs)
        self.leads = LeadsRepository(**kwargs)
        self.sellers = SellersRepository(**kwargs)
        self.delivery_logs = DeliveryLogsRepository(**kwargs)
        self.system_logs = SystemLogsRepository(**kwargs)
        self.user_roles = UserRolesRepository(**kwargs)
