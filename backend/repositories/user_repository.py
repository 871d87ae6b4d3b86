"""
Repositório de usuários sobre o MongoDB (motor).

Fronteira de serialização do CPF: toda gravação passa por CPFUtils.normalize_cpf
e toda leitura exposta passa por CPFUtils.format_cpf. No banco o CPF fica
sempre com 11 dígitos, sem pontuação.
"""
import logging
import math
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import DuplicateKeyError

from backend.utils.cpf_utils import CPFUtils

# Nunca expostos pela API
HIDDEN_FIELDS = ("google_token", "google_refresh_token")

DEFAULT_PER_PAGE = 15
MAX_PER_PAGE = 100


def _get_logger() -> logging.Logger:
    logger = logging.getLogger("user_repository")
    logger.setLevel(logging.INFO)
    if not logger.hasHandlers():
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        logger.addHandler(handler)
    return logger


def to_object_id(user_id: Any) -> Optional[ObjectId]:
    if isinstance(user_id, ObjectId):
        return user_id
    if isinstance(user_id, str) and ObjectId.is_valid(user_id):
        return ObjectId(user_id)
    return None


def calculate_age(birth_date: Optional[date], today: Optional[date] = None) -> Optional[int]:
    if birth_date is None:
        return None
    if isinstance(birth_date, datetime):
        birth_date = birth_date.date()
    today = today or date.today()
    had_birthday = (today.month, today.day) >= (birth_date.month, birth_date.day)
    return today.year - birth_date.year - (0 if had_birthday else 1)


def title_case_name(name: str) -> str:
    """Primeira letra maiúscula em cada palavra e em cada parte separada por hífen."""
    return " ".join("-".join(part.capitalize() for part in word.split("-")) for word in name.split())


def duplicate_key_field(exc: DuplicateKeyError) -> Optional[str]:
    """
    Campo do índice único violado, quando o servidor informa.
    Retorno:
        str: nome do campo, ou None se o erro não trouxer o índice
    """
    details = exc.details or {}
    key = details.get("keyPattern") or details.get("keyValue")
    if key:
        return next(iter(key))
    match = re.search(r"index: (\w+?)_\d", str(exc))
    return match.group(1) if match else None


def _bson_to_json(val):
    if isinstance(val, dict):
        return {k: _bson_to_json(v) for k, v in val.items()}
    elif isinstance(val, list):
        return [_bson_to_json(v) for v in val]
    elif isinstance(val, ObjectId):
        return str(val)
    elif isinstance(val, datetime):
        return val.isoformat()
    else:
        return val


def to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Converte um documento do banco no formato exposto pela API.
    Parâmetros:
        doc (dict): documento bruto do MongoDB
    Retorno:
        dict: usuário com id em texto, CPF formatado e idade calculada
    """
    if doc is None:
        return None
    birth_date = doc.get("birth_date")
    result = {k: v for k, v in doc.items() if k not in HIDDEN_FIELDS and k != "_id"}
    result = _bson_to_json(result)
    result["id"] = str(doc["_id"])
    cpf = doc.get("cpf")
    result["cpf"] = CPFUtils.format_cpf(cpf) if cpf is not None else None
    result["birth_date"] = birth_date.date().isoformat() if isinstance(birth_date, datetime) else None
    result["age"] = calculate_age(birth_date)
    result["registration_completed"] = bool(doc.get("registration_completed", False))
    return result


def to_document(data: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    """
    Prepara dados para gravação.
    Parâmetros:
        data (dict): campos a gravar
    Retorno:
        tuple: (campos para $set, campos para $unset)
    """
    doc: Dict[str, Any] = {}
    unset: List[str] = []
    for key, value in data.items():
        if key in ("_id", "id", "age"):
            continue
        if key == "cpf":
            if value is None:
                # Campo ausente mantém o índice único esparso consistente
                unset.append("cpf")
                continue
            value = CPFUtils.normalize_cpf(str(value))
        elif key == "name" and isinstance(value, str):
            value = title_case_name(value)
        elif key == "birth_date" and isinstance(value, date) and not isinstance(value, datetime):
            value = datetime(value.year, value.month, value.day)
        doc[key] = value
    return doc, unset


class UserRepository:
    def __init__(self, collection: AsyncIOMotorCollection, logger: Optional[logging.Logger] = None):
        self.collection = collection
        self.logger = logger or _get_logger()

    async def find_raw_by_id(self, user_id: Any) -> Optional[Dict[str, Any]]:
        """Documento bruto (CPF normalizado, tokens incluídos) para uso interno."""
        obj_id = to_object_id(user_id)
        if obj_id is None:
            return None
        return await self.collection.find_one({"_id": obj_id})

    async def find_by_id(self, user_id: Any) -> Optional[Dict[str, Any]]:
        return to_public(await self.find_raw_by_id(user_id))

    async def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return to_public(await self.collection.find_one({"email": email}))

    async def find_raw_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"email": email})

    async def find_by_google_id(self, google_id: str) -> Optional[Dict[str, Any]]:
        return to_public(await self.collection.find_one({"google_id": google_id}))

    async def email_in_use(self, email: str, exclude_user_id: Any = None) -> bool:
        query: Dict[str, Any] = {"email": email}
        obj_id = to_object_id(exclude_user_id)
        if obj_id is not None:
            query["_id"] = {"$ne": obj_id}
        return await self.collection.find_one(query) is not None

    async def cpf_in_use(self, cpf: str, exclude_user_id: Any = None) -> bool:
        """
        Verifica se o CPF já pertence a outro usuário.
        Parâmetros:
            cpf (str): CPF em qualquer formato
            exclude_user_id (str, opcional): usuário ignorado na busca
        Retorno:
            bool: True se outro usuário já usa o CPF
        """
        query: Dict[str, Any] = {"cpf": CPFUtils.normalize_cpf(cpf)}
        obj_id = to_object_id(exclude_user_id)
        if obj_id is not None:
            query["_id"] = {"$ne": obj_id}
        return await self.collection.find_one(query) is not None

    async def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        doc, _ = to_document(data)
        now = datetime.utcnow()
        doc.setdefault("registration_completed", False)
        doc["created_at"] = now
        doc["updated_at"] = now
        res = await self.collection.insert_one(doc)
        self.logger.info(f"Usuário criado: user_id={res.inserted_id}")
        return to_public(await self.collection.find_one({"_id": res.inserted_id}))

    async def update(self, user_id: Any, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Atualiza campos do usuário.
        Parâmetros:
            user_id (str): ID do usuário
            data (dict): campos a atualizar
        Retorno:
            dict: usuário atualizado, ou None se não existir
        """
        obj_id = to_object_id(user_id)
        if obj_id is None:
            return None
        doc, unset = to_document(data)
        doc["updated_at"] = datetime.utcnow()
        update: Dict[str, Any] = {"$set": doc}
        if unset:
            update["$unset"] = {key: "" for key in unset}
        res = await self.collection.update_one({"_id": obj_id}, update)
        if res.matched_count == 0:
            self.logger.warning(f"Usuário não encontrado para atualização: user_id={user_id}")
            return None
        self.logger.info(f"Usuário atualizado: user_id={user_id}, campos={sorted(doc)}")
        return await self.find_by_id(obj_id)

    async def delete(self, user_id: Any) -> bool:
        obj_id = to_object_id(user_id)
        if obj_id is None:
            return False
        res = await self.collection.delete_one({"_id": obj_id})
        if res.deleted_count:
            self.logger.info(f"Usuário removido: user_id={user_id}")
        return res.deleted_count > 0

    async def _find_many(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        async for doc in self.collection.find(query).sort([("created_at", -1), ("_id", -1)]):
            items.append(to_public(doc))
        return items

    async def list_all(self) -> List[Dict[str, Any]]:
        return await self._find_many({})

    async def find_registered(self) -> List[Dict[str, Any]]:
        return await self._find_many({"registration_completed": True})

    async def find_pending(self) -> List[Dict[str, Any]]:
        return await self._find_many({"registration_completed": False})

    async def paginate(self, filters: Optional[Dict[str, Any]] = None, per_page: int = DEFAULT_PER_PAGE, page: int = 1) -> Dict[str, Any]:
        """
        Lista usuários paginados.
        Parâmetros:
            filters (dict): name (parcial, sem diferenciar maiúsculas),
                cpf (parcial, com ou sem formatação), registration_completed
            per_page (int): itens por página (1 a 100)
            page (int): página, a partir de 1
        Retorno:
            dict: data, current_page, per_page, total, last_page, from, to
        """
        filters = filters or {}
        per_page = max(1, min(int(per_page), MAX_PER_PAGE))
        page = max(1, int(page))

        query: Dict[str, Any] = {}
        if filters.get("name"):
            query["name"] = {"$regex": re.escape(filters["name"]), "$options": "i"}
        if filters.get("cpf"):
            cpf_clean = CPFUtils.normalize_cpf(filters["cpf"])
            if cpf_clean:
                query["cpf"] = {"$regex": cpf_clean}
        if filters.get("registration_completed") is not None:
            query["registration_completed"] = bool(filters["registration_completed"])

        total = await self.collection.count_documents(query)
        skip = (page - 1) * per_page
        items: List[Dict[str, Any]] = []
        async for doc in self.collection.find(query).sort("_id", -1).skip(skip).limit(per_page):
            items.append(to_public(doc))

        return {
            "data": items,
            "current_page": page,
            "per_page": per_page,
            "total": total,
            "last_page": max(1, math.ceil(total / per_page)),
            "from": skip + 1 if items else None,
            "to": skip + len(items) if items else None,
        }
