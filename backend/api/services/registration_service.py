"""
Serviço de cadastro: conclusão do cadastro após o login via Google.
Valida os dados, grava o CPF normalizado e dispara o e-mail de confirmação
pela fila, sem aguardar o envio.
"""
from datetime import date
from typing import Any, Callable, Dict, List, Optional
import logging

from pymongo.errors import DuplicateKeyError

from backend.api.errors import UserNotFoundError, ValidationError, add_error
from backend.api.services.google_service import GoogleService
from backend.api.services.notification_service import NotificationService
from backend.repositories.user_repository import UserRepository
from backend.utils.cpf_utils import CPFUtils
from backend.utils.date_utils import parse_date

NAME_MAX_LENGTH = 255

MSG_NAME_REQUIRED = "O nome é obrigatório."
MSG_NAME_STRING = "O nome deve ser um texto válido."
MSG_NAME_MAX = "O nome não pode ter mais de 255 caracteres."
MSG_BIRTH_DATE_REQUIRED = "A data de nascimento é obrigatória."
MSG_BIRTH_DATE_FORMAT = "A data de nascimento deve estar no formato válido (dd/mm/aaaa)."
MSG_BIRTH_DATE_BEFORE = "A data de nascimento deve ser anterior a hoje."
MSG_CPF_REQUIRED = "O CPF é obrigatório."
MSG_CPF_STRING = "O CPF deve ser um texto válido."
MSG_CPF_INVALID = "O CPF informado é inválido."
MSG_CPF_TAKEN = "Este CPF já está cadastrado."


class RegistrationService:
    def __init__(self, repository: UserRepository, google_service: GoogleService,
                 notification_service: NotificationService, logger=None,
                 today: Callable[[], date] = date.today):
        """
        Inicializa o serviço de cadastro.
        Parâmetros:
            repository (UserRepository): repositório de usuários
            google_service (GoogleService): resolve o e-mail atual na conta Google
            notification_service (NotificationService): fila de e-mails
            logger (logging.Logger, opcional): Logger para logs
            today (callable, opcional): data de referência para a validação
        """
        self.repository = repository
        self.google_service = google_service
        self.notification_service = notification_service
        self.today = today
        if logger is None:
            logger = logging.getLogger("registration_service")
            logger.setLevel(logging.INFO)
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
            if not logger.hasHandlers():
                logger.addHandler(handler)
        self.logger = logger

    async def complete_registration(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Completa o cadastro de um usuário.
        Parâmetros:
            user_id (str): ID do usuário
            payload (dict): name, birth_date, cpf
        Retorno:
            dict: usuário atualizado (CPF formatado)
        Exceções:
            ValidationError: erros por campo, nada é gravado
            UserNotFoundError: usuário inexistente
        """
        self.logger.info(f"Recebendo conclusão de cadastro: user_id={user_id}")
        birth_date = await self._validate_registration_data(payload, user_id)

        raw_user = await self.repository.find_raw_by_id(user_id)
        if raw_user is None:
            self.logger.warning(f"Usuário não encontrado: user_id={user_id}")
            raise UserNotFoundError(user_id)

        try:
            user = await self.repository.update(user_id, {
                "name": payload["name"],
                "birth_date": birth_date,
                "cpf": CPFUtils.normalize_cpf(payload["cpf"]),
                "registration_completed": True,
            })
        except DuplicateKeyError:
            # Outro cadastro gravou o mesmo CPF depois da verificação
            self.logger.warning(f"CPF já cadastrado para outro usuário (gravação concorrente): user_id={user_id}")
            raise ValidationError({"cpf": [MSG_CPF_TAKEN]})
        if user is None:
            self.logger.warning(f"Usuário removido durante a conclusão do cadastro: user_id={user_id}")
            raise UserNotFoundError(user_id)
        self.logger.info(f"Cadastro concluído: user_id={user_id}")

        email = await self._resolve_email(raw_user) or user["email"]
        self.logger.info(f"Disparando envio de e-mail de confirmação: user_id={user_id}, email={email}")
        await self.notification_service.send_registration_confirmation(user["id"], email)
        return user

    async def _resolve_email(self, raw_user: Dict[str, Any]) -> Optional[str]:
        """E-mail atual da conta Google; None se a consulta falhar (o cadastro já foi gravado)."""
        try:
            return await self.google_service.get_email_with_auto_refresh(raw_user)
        except Exception as e:
            self.logger.exception(f"Erro ao obter e-mail da conta Google, usando o e-mail cadastrado: user_id={raw_user.get('_id')}, erro={e}")
            return None

    async def get_registration_status(self, user_id: str) -> Dict[str, Any]:
        user = await self.repository.find_by_id(user_id)
        if user is None:
            return {"completed": False, "user": None}
        return {"completed": user["registration_completed"], "user": user}

    async def _validate_registration_data(self, payload: Dict[str, Any], user_id: str) -> Optional[date]:
        errors: Dict[str, List[str]] = {}

        name = payload.get("name")
        if name is None or (isinstance(name, str) and not name.strip()):
            add_error(errors, "name", MSG_NAME_REQUIRED)
        elif not isinstance(name, str):
            add_error(errors, "name", MSG_NAME_STRING)
        elif len(name) > NAME_MAX_LENGTH:
            add_error(errors, "name", MSG_NAME_MAX)

        raw_birth_date = payload.get("birth_date")
        birth_date = None
        if raw_birth_date in (None, ""):
            add_error(errors, "birth_date", MSG_BIRTH_DATE_REQUIRED)
        else:
            birth_date = parse_date(raw_birth_date)
            if birth_date is None:
                add_error(errors, "birth_date", MSG_BIRTH_DATE_FORMAT)
            elif birth_date >= self.today():
                add_error(errors, "birth_date", MSG_BIRTH_DATE_BEFORE)

        cpf = payload.get("cpf")
        if cpf in (None, ""):
            add_error(errors, "cpf", MSG_CPF_REQUIRED)
        elif not isinstance(cpf, str):
            add_error(errors, "cpf", MSG_CPF_STRING)
        else:
            cpf_norm = CPFUtils.normalize_cpf(cpf)
            reason = CPFUtils.check_cpf(cpf_norm)
            if reason is not None:
                self.logger.warning(f"CPF inválido detectado: user_id={user_id}, motivo={reason}")
                add_error(errors, "cpf", MSG_CPF_INVALID)
            elif await self.repository.cpf_in_use(cpf_norm, exclude_user_id=user_id):
                self.logger.warning(f"CPF já cadastrado para outro usuário: user_id={user_id}")
                add_error(errors, "cpf", MSG_CPF_TAKEN)

        if errors:
            self.logger.warning(f"Dados de cadastro inválidos: user_id={user_id}, erros={errors}")
            raise ValidationError(errors)
        return birth_date
