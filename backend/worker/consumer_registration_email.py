import asyncio
import json
import os
import logging
import time
from datetime import datetime

import redis.asyncio as redis
from backend.mongo.db import USERS_COLLECTION, connect_to_mongo, close_mongo_connection, get_collection
from backend.notifications.mailer import Mailer, build_registration_email
from backend.repositories.user_repository import UserRepository

LOG = logging.getLogger("consumer_registration_email")
LOG.setLevel(logging.INFO)
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
LOG.addHandler(handler)

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
QUEUE_KEY = os.getenv("REGISTRATION_EMAIL_QUEUE", "registration_emails_queue")
DELAYED_KEY = os.getenv("REGISTRATION_EMAIL_DELAYED", "registration_emails_delayed")
DLQ_KEY = os.getenv("REGISTRATION_EMAIL_DLQ", "registration_emails_dlq")
PROCESSING_KEY = os.getenv("REGISTRATION_EMAIL_PROCESSING", "registration_emails_processing")

MAX_RETRIES = 3
BACKOFF_SECONDS = [10, 30, 60]
SEND_TIMEOUT_SECONDS = 60



# ------------------- Classe principal do worker -------------------
class RegistrationEmailProcessor:
    def __init__(self, queue_key, delayed_key, dlq_key, repository, mailer, logger,
                 max_retries=MAX_RETRIES, backoff=BACKOFF_SECONDS, send_timeout=SEND_TIMEOUT_SECONDS, clock=time.time,
                 processing_key=PROCESSING_KEY):
        """
        Inicializa o processador de e-mails de cadastro.
        Parâmetros:
            queue_key (str): Nome da fila principal
            delayed_key (str): Sorted set das retentativas agendadas (score = horário de liberação)
            dlq_key (str): Nome da fila de dead-letter
            repository (UserRepository): Repositório de usuários
            mailer (Mailer): Envio SMTP
            logger (logging.Logger): Logger para logs
            max_retries (int): Retentativas após a primeira tentativa
            backoff (list[int]): Espera em segundos antes de cada retentativa
            send_timeout (float): Tempo limite de cada envio
            clock (callable): Fonte de tempo em segundos
            processing_key (str): Lista das mensagens retiradas da fila e ainda sem ack
        """
        self.logger = logger
        self.logger.debug(f"Inicializando RegistrationEmailProcessor: queue_key={queue_key}, delayed_key={delayed_key}, dlq_key={dlq_key}")
        self.queue_key = queue_key
        self.delayed_key = delayed_key
        self.dlq_key = dlq_key
        self.repository = repository
        self.mailer = mailer
        self.max_retries = max_retries
        self.backoff = backoff
        self.send_timeout = send_timeout
        self.clock = clock
        self.processing_key = processing_key


    def backoff_for(self, attempt: int) -> int:
        """Espera antes da próxima tentativa, depois da tentativa `attempt` (1-based)."""
        return self.backoff[min(attempt, len(self.backoff)) - 1]


    async def _schedule_retry(self, r, data, exc):
        """
        Agenda nova tentativa no sorted set de atrasadas.
        Parâmetros:
            r: Instância Redis
            data (dict): Mensagem decodificada
            exc (Exception): Erro da tentativa atual
        Retorno: None
        """
        attempt = int(data.get("attempt", 1))
        delay = self.backoff_for(attempt)
        retry = dict(data, attempt=attempt + 1, last_error=str(exc))
        await r.zadd(self.delayed_key, {json.dumps(retry): self.clock() + delay})
        self.logger.warning(f"Falha ao enviar e-mail de confirmação: user_id={data.get('user_id')}, tentativa={attempt}, nova tentativa em {delay}s, erro={exc}")


    async def _handle_terminal_failure(self, r, msg, data, exc) -> bool:
        """
        Falha definitiva: registra em log e envia para a DLQ.
        O cadastro do usuário não é alterado.
        Retorno:
            bool: True se a mensagem chegou à DLQ
        """
        self.logger.critical(
            f"Falha definitiva no envio de e-mail de confirmação: user_id={data.get('user_id')}, "
            f"email={data.get('email')}, erro={exc}, tentativas={data.get('attempt')}"
        )
        try:
            await r.rpush(self.dlq_key, msg)
        except Exception as e:
            self.logger.exception(f"Erro ao empurrar para DLQ: {e}")
            return False
        return True


    async def release_due_retries(self, r) -> int:
        """
        Move para a fila principal as retentativas cujo horário já passou.
        Retorno:
            int: quantidade de mensagens liberadas
        """
        due = await r.zrangebyscore(self.delayed_key, 0, self.clock())
        released = 0
        for value in due:
            # Só quem conseguiu remover republica (vários workers)
            if await r.zrem(self.delayed_key, value):
                await r.rpush(self.queue_key, value)
                released += 1
        if released:
            self.logger.info(f"Retentativas liberadas para a fila: total={released}")
        return released


    async def _handle_failure(self, r, msg, data, attempt, exc) -> bool:
        """
        Agenda retentativa ou, esgotadas as tentativas, trata como falha definitiva.
        Retorno:
            bool: True se a mensagem foi para o sorted set de atrasadas ou para a DLQ
        """
        if attempt - 1 >= self.max_retries:
            return await self._handle_terminal_failure(r, msg, data, exc)
        try:
            await self._schedule_retry(r, data, exc)
            return True
        except Exception as e:
            self.logger.exception(f"Erro ao agendar retentativa: user_id={data.get('user_id')}, erro={e}")
            return await self._handle_terminal_failure(r, msg, data, exc)


    async def process_message(self, msg: str, r: redis.Redis) -> bool:
        """
        Processa uma mensagem de e-mail de cadastro da fila.
        Qualquer erro após a leitura da mensagem segue a política de retentativas.
        Parâmetros:
            msg (str): Mensagem JSON
            r: Instância Redis
        Retorno:
            bool: True se a mensagem foi tratada e pode ser confirmada (ack)
        """
        self.logger.info(f"Recebendo mensagem da fila: {msg}")
        try:
            data = json.loads(msg)
            if not isinstance(data, dict):
                raise ValueError("mensagem não é um objeto JSON")
            attempt = int(data.get("attempt", 1))
        except (TypeError, ValueError) as exc:
            return await self._handle_terminal_failure(r, msg, {}, exc)

        user_id = data.get("user_id")
        email = data.get("email")
        if not user_id or not email:
            self.logger.warning(f"Mensagem sem user_id ou email: {data}")
            return await self._handle_terminal_failure(r, msg, data, ValueError("mensagem incompleta"))

        start = time.monotonic()
        try:
            user = await self.repository.find_by_id(user_id)
            if user is None:
                self.logger.warning(f"Usuário não encontrado, mensagem descartada: user_id={user_id}")
                return True
            self.logger.info(f"Iniciando envio de e-mail de confirmação de cadastro: user_id={user_id}, email={email}, tentativa={attempt}")
            message = build_registration_email(user, email)
            await asyncio.wait_for(self.mailer.send(message), timeout=self.send_timeout)
        except Exception as exc:
            return await self._handle_failure(r, msg, data, attempt, exc)
        elapsed = time.monotonic() - start
        self.logger.info(f"E-mail de confirmação enviado com sucesso: user_id={user_id}, email={email}, elapsed={elapsed:.2f}s")
        return True


    async def next_message(self, r, timeout=5):
        """
        Move a próxima mensagem da fila para a lista de processamento.
        Retorno:
            str: mensagem, ou None se a fila ficou vazia durante o timeout
        """
        value = await r.blmove(self.queue_key, self.processing_key, timeout, src="LEFT", dest="RIGHT")
        if isinstance(value, bytes):
            value = value.decode()
        return value


    async def acknowledge(self, r, msg) -> None:
        await r.lrem(self.processing_key, 1, msg)


    async def requeue_unacked(self, r) -> int:
        """
        Devolve à fila as mensagens que ficaram na lista de processamento
        (worker interrompido antes do ack).
        Retorno:
            int: quantidade de mensagens devolvidas
        """
        requeued = 0
        while await r.lmove(self.processing_key, self.queue_key, src="LEFT", dest="RIGHT"):
            requeued += 1
        if requeued:
            self.logger.warning(f"Mensagens sem ack devolvidas à fila: total={requeued}")
        return requeued



####################
####################
async def main() -> None:
    """
    Loop principal do worker. Conecta aos serviços, libera retentativas, consome a fila e envia os e-mails.
    Parâmetros: None
    Retorno: None
    """

    LOG.info("Conectando ao MongoDB e Redis...")
    await connect_to_mongo()
    r = redis.from_url(REDIS_URL)
    repository = UserRepository(get_collection(USERS_COLLECTION), LOG)
    processor = RegistrationEmailProcessor(QUEUE_KEY, DELAYED_KEY, DLQ_KEY, repository, Mailer(), LOG)
    await processor.requeue_unacked(r)
    LOG.info(f"Worker iniciado em {datetime.utcnow().isoformat()}: fila={QUEUE_KEY}")
    try:
        while True:
            try:
                await processor.release_due_retries(r)
                value = await processor.next_message(r, timeout=5)
                if value is None:
                    continue
                LOG.debug(f"Mensagem recebida da fila: {value}")
                # Sem ack a mensagem fica na lista de processamento e volta à fila no próximo start
                if await processor.process_message(value, r):
                    await processor.acknowledge(r, value)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOG.exception("Erro no loop do consumer")
                await asyncio.sleep(1)
    finally:
        await r.aclose()
        await close_mongo_connection()



####################-----------------------------####################

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        LOG.info("Worker finalizado pelo usuário")
