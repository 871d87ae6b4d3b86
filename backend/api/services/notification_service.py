"""
Produtor das notificações de cadastro: enfileira a mensagem no Redis e
retorna sem aguardar o envio. Entrega, retentativas e falha definitiva
ficam com o worker (backend/worker/consumer_registration_email.py).
"""
from datetime import datetime
import json
import logging
import os

import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
QUEUE_KEY = os.getenv("REGISTRATION_EMAIL_QUEUE", "registration_emails_queue")


class NotificationService:
    def __init__(self, redis_url: str = REDIS_URL, queue_key: str = QUEUE_KEY, logger=None):
        """
        Inicializa o serviço de notificação.
        Parâmetros:
            redis_url (str): URL do Redis
            queue_key (str): Nome da fila de e-mails de cadastro
            logger (logging.Logger, opcional): Logger para logs
        """
        self.redis_url = redis_url
        self.queue_key = queue_key
        if logger is None:
            logger = logging.getLogger("notification_service")
            logger.setLevel(logging.INFO)
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
            if not logger.hasHandlers():
                logger.addHandler(handler)
        self.logger = logger

    def _connect(self) -> redis.Redis:
        return redis.from_url(self.redis_url)

    async def send_registration_confirmation(self, user_id: str, email: str) -> bool:
        """
        Enfileira o e-mail de confirmação de cadastro.
        Parâmetros:
            user_id (str): ID do usuário
            email (str): destinatário
        Retorno:
            bool: True se a mensagem foi enfileirada
        """
        msg = {
            "user_id": user_id,
            "email": email,
            "attempt": 1,
            "queued_at": datetime.utcnow().isoformat(),
        }
        r = self._connect()
        try:
            await r.rpush(self.queue_key, json.dumps(msg))
            self.logger.info(f"E-mail de cadastro enfileirado no Redis: msg={msg}")
            return True
        except redis.RedisError:
            # O cadastro já foi concluído: a falha na fila não o desfaz
            self.logger.exception(f"Erro ao enfileirar e-mail de cadastro: user_id={user_id}")
            return False
        finally:
            await r.aclose()

    async def queue_size(self) -> int:
        r = self._connect()
        try:
            return await r.llen(self.queue_key)
        finally:
            await r.aclose()
