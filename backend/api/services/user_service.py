"""
Serviço de usuários: CRUD e listagens usados pelos endpoints /api/users.
"""
from typing import Any, Dict, List, Optional
import logging

from email_validator import EmailNotValidError, validate_email
from pymongo.errors import DuplicateKeyError

from backend.api.errors import ValidationError, add_error
from backend.repositories.user_repository import DEFAULT_PER_PAGE, UserRepository, duplicate_key_field
from backend.utils.cpf_utils import CPF_INVALID_LENGTH, CPFUtils
from backend.utils.date_utils import parse_date

MSG_NAME_REQUIRED = "O nome é obrigatório."
MSG_NAME_STRING = "O nome deve ser um texto válido."
MSG_NAME_MAX = "O nome não pode ter mais de 255 caracteres."
MSG_EMAIL_REQUIRED = "O e-mail é obrigatório."
MSG_EMAIL_INVALID = "O e-mail deve ser válido."
MSG_EMAIL_TAKEN = "Este e-mail já está cadastrado."
MSG_BIRTH_DATE_INVALID = "A data de nascimento deve ser uma data válida."
MSG_CPF_STRING = "O CPF deve ser um texto válido."
MSG_CPF_LENGTH = "O CPF deve ter 11 dígitos."
MSG_CPF_INVALID = "O CPF informado é inválido."
MSG_CPF_TAKEN = "Este CPF já está cadastrado."

WRITABLE_FIELDS = ("name", "email", "birth_date", "cpf", "avatar", "registration_completed")


class UserService:
    def __init__(self, repository: UserRepository, logger=None):
        self.repository = repository
        if logger is None:
            logger = logging.getLogger("user_service")
            logger.setLevel(logging.INFO)
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
            if not logger.hasHandlers():
                logger.addHandler(handler)
        self.logger = logger

    async def get_all_users(self) -> List[Dict[str, Any]]:
        return await self.repository.list_all()

    async def paginate_users(self, filters: Optional[Dict[str, Any]] = None, per_page: int = DEFAULT_PER_PAGE, page: int = 1) -> Dict[str, Any]:
        return await self.repository.paginate(filters or {}, per_page, page)

    async def get_user_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.repository.find_by_id(user_id)

    async def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return await self.repository.find_by_email(email)

    async def create_user(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Cria um usuário após validar os dados.
        Parâmetros:
            data (dict): name, email, birth_date (opcional), cpf (opcional)
        Retorno:
            dict: usuário criado
        """
        values = await self._validate_user_data(data)
        try:
            user = await self.repository.create(values)
        except DuplicateKeyError as exc:
            raise await self._duplicate_error(exc, values)
        self.logger.info(f"Usuário criado via API: user_id={user['id']}")
        return user

    async def update_user(self, user_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        values = await self._validate_user_data(data, user_id)
        try:
            return await self.repository.update(user_id, values)
        except DuplicateKeyError as exc:
            raise await self._duplicate_error(exc, values, user_id)

    async def delete_user(self, user_id: str) -> bool:
        return await self.repository.delete(user_id)

    async def get_registered_users(self) -> List[Dict[str, Any]]:
        return await self.repository.find_registered()

    async def get_pending_users(self) -> List[Dict[str, Any]]:
        return await self.repository.find_pending()

    async def _validate_user_data(self, data: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Valida os dados e devolve apenas os campos graváveis.
        Exceções:
            ValidationError: erros agregados por campo
        """
        errors: Dict[str, List[str]] = {}
        values = {k: data[k] for k in WRITABLE_FIELDS if k in data}

        name = data.get("name")
        if name is None or (isinstance(name, str) and not name.strip()):
            add_error(errors, "name", MSG_NAME_REQUIRED)
        elif not isinstance(name, str):
            add_error(errors, "name", MSG_NAME_STRING)
        elif len(name) > 255:
            add_error(errors, "name", MSG_NAME_MAX)

        email = data.get("email")
        if not email:
            add_error(errors, "email", MSG_EMAIL_REQUIRED)
        else:
            try:
                validate_email(str(email), check_deliverability=False)
            except EmailNotValidError:
                add_error(errors, "email", MSG_EMAIL_INVALID)
            else:
                if await self.repository.email_in_use(email, exclude_user_id=user_id):
                    add_error(errors, "email", MSG_EMAIL_TAKEN)

        if data.get("birth_date") not in (None, ""):
            birth_date = parse_date(data["birth_date"])
            if birth_date is None:
                add_error(errors, "birth_date", MSG_BIRTH_DATE_INVALID)
            else:
                values["birth_date"] = birth_date
        elif "birth_date" in values:
            values["birth_date"] = None

        cpf = data.get("cpf")
        cpf_clean = CPFUtils.normalize_cpf(cpf) if isinstance(cpf, str) else ""
        if cpf not in (None, "") and not isinstance(cpf, str):
            add_error(errors, "cpf", MSG_CPF_STRING)
        elif cpf_clean or (isinstance(cpf, str) and cpf.strip()):
            reason = CPFUtils.check_cpf(cpf_clean)
            if reason == CPF_INVALID_LENGTH:
                add_error(errors, "cpf", MSG_CPF_LENGTH)
            elif reason is not None:
                add_error(errors, "cpf", MSG_CPF_INVALID)
            elif await self.repository.cpf_in_use(cpf_clean, exclude_user_id=user_id):
                add_error(errors, "cpf", MSG_CPF_TAKEN)
        elif "cpf" in values:
            values["cpf"] = None

        if errors:
            self.logger.warning(f"Dados de usuário inválidos: user_id={user_id}, erros={errors}")
            raise ValidationError(errors)
        return values

    async def _duplicate_error(self, exc: DuplicateKeyError, values: Dict[str, Any], user_id: Optional[str] = None) -> ValidationError:
        """
        Converte a violação de índice único (gravação concorrente) em erro de campo.
        Retorno:
            ValidationError: erro de e-mail ou CPF já cadastrado
        """
        field = duplicate_key_field(exc)
        if field is None:
            cpf = values.get("cpf")
            cpf_taken = bool(cpf) and await self.repository.cpf_in_use(cpf, exclude_user_id=user_id)
            field = "cpf" if cpf_taken else "email"
        self.logger.warning(f"Violação de índice único ao gravar usuário: user_id={user_id}, campo={field}")
        if field == "cpf":
            return ValidationError({"cpf": [MSG_CPF_TAKEN]})
        return ValidationError({"email": [MSG_EMAIL_TAKEN]})
