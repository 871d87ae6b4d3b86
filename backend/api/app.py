
from typing import Any, Dict, Optional
from urllib.parse import urlencode
from fastapi import FastAPI, status, Depends, Path, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from datetime import datetime
import logging
import os
import uvicorn
import redis.asyncio as redis
from pymongo.errors import DuplicateKeyError

from backend.api.errors import UserNotFoundError, ValidationError
from backend.api.services.google_service import GoogleService, token_expires_at
from backend.api.services.notification_service import NotificationService
from backend.api.services.registration_service import RegistrationService
from backend.api.services.user_service import UserService
from backend.auth.basic import admin_auth
from backend.mongo.db import USERS_COLLECTION, connect_to_mongo, close_mongo_connection, ensure_indexes, get_collection, ping
from backend.repositories.user_repository import DEFAULT_PER_PAGE, MAX_PER_PAGE, UserRepository

logger = logging.getLogger(__name__)

APP_NAME = os.getenv("APP_NAME", "Sistema de Cadastro de Usuários")
APP_VERSION = "1.0.0"
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
USER_COOKIE = "user_id"

MSG_USER_NOT_FOUND = "Usuário não encontrado."
MSG_REGISTRATION_DONE = "Cadastro concluído com sucesso! Um e-mail de confirmação foi enviado."

app = FastAPI(title="User Registration API", version=APP_VERSION)


# Conexão MongoDB no ciclo de vida da aplicação
@app.on_event("startup")
async def on_startup() -> None:
    """
    Evento de inicialização da API.
    Conecta ao MongoDB e garante os índices da coleção de usuários.
    """
    logger.info("Iniciando evento de startup da API")
    await connect_to_mongo()
    await ensure_indexes()
    logger.info("Conexão com MongoDB estabelecida")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    logger.info("Iniciando evento de shutdown da API")
    await close_mongo_connection()
    logger.info("Conexão com MongoDB encerrada")


######### Dependências
notification_service = NotificationService(REDIS_URL)


def get_user_repository() -> UserRepository:
    return UserRepository(get_collection(USERS_COLLECTION))


def get_google_service(repository: UserRepository = Depends(get_user_repository)) -> GoogleService:
    return GoogleService(repository)


def get_notification_service() -> NotificationService:
    return notification_service


def get_user_service(repository: UserRepository = Depends(get_user_repository)) -> UserService:
    return UserService(repository)


def get_registration_service(
    repository: UserRepository = Depends(get_user_repository),
    google_service: GoogleService = Depends(get_google_service),
    notifications: NotificationService = Depends(get_notification_service),
) -> RegistrationService:
    return RegistrationService(repository, google_service, notifications)


######### Erros de domínio
@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    logger.warning(f"Erro de validação em {request.url.path}: {exc.errors}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"success": False, "message": "Erro de validação.", "errors": exc.errors},
    )


@app.exception_handler(UserNotFoundError)
async def user_not_found_handler(request: Request, exc: UserNotFoundError) -> JSONResponse:
    logger.warning(f"Usuário não encontrado em {request.url.path}: user_id={exc.user_id}")
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"success": False, "message": MSG_USER_NOT_FOUND})


#########
@app.get("/api")
async def info(request: Request) -> dict:
    """
    Informações da API e mapa dos endpoints.
    """
    base = str(request.base_url).rstrip("/")
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "description": "API de cadastro de usuários com autenticação Google OAuth",
        "documentation": f"{base}/docs",
        "endpoints": {
            "users": f"{base}/api/users",
            "auth": {
                "google_redirect": f"{base}/api/auth/google/redirect",
                "google_callback": f"{base}/api/auth/google/callback",
                "user": f"{base}/api/auth/user",
                "logout": f"{base}/api/auth/logout",
            },
            "registration": {
                "complete": f"{base}/api/registration/complete",
                "status": f"{base}/api/registration/status/{{user_id}}",
            },
            "health": f"{base}/api/health",
        },
    }


#########
@app.get("/api/health")
async def health(notifications: NotificationService = Depends(get_notification_service)) -> JSONResponse:
    """
    Verifica MongoDB, Redis e a fila de e-mails.
    Retorno:
        200 com status ok, ou 503 com status degraded
    """
    result: Dict[str, Any] = {"status": "ok", "timestamp": datetime.utcnow().isoformat(), "services": {}}

    try:
        await ping()
        result["services"]["database"] = {"status": "ok"}
    except Exception:
        logger.exception("Health check: falha no MongoDB")
        result["status"] = "degraded"
        result["services"]["database"] = {"status": "error", "message": "Database connection failed"}

    r = redis.from_url(REDIS_URL)
    try:
        await r.ping()
        result["services"]["redis"] = {"status": "ok"}
    except redis.RedisError:
        logger.exception("Health check: falha no Redis")
        result["status"] = "degraded"
        result["services"]["redis"] = {"status": "error", "message": "Redis connection failed"}
    finally:
        await r.aclose()

    try:
        result["services"]["queue"] = {"status": "ok", "pending_jobs": await notifications.queue_size()}
    except redis.RedisError:
        result["services"]["queue"] = {"status": "unknown", "message": "Could not check queue"}

    status_code = status.HTTP_200_OK if result["status"] == "ok" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=result)


######### Users (prefixo /api)
@app.get("/api/users")
async def list_users(
    name: Optional[str] = Query(None, description="Busca parcial pelo nome"),
    cpf: Optional[str] = Query(None, description="Busca parcial pelo CPF, com ou sem formatação"),
    registration_completed: Optional[bool] = Query(None),
    per_page: int = Query(DEFAULT_PER_PAGE, ge=1, le=MAX_PER_PAGE),
    page: int = Query(1, ge=1),
    service: UserService = Depends(get_user_service),
) -> dict:
    filters = {"name": name, "cpf": cpf, "registration_completed": registration_completed}
    result = await service.paginate_users(filters, per_page, page)
    logger.info(f"Listando usuários: filtros={filters}, page={page}, total={result['total']}")
    return result


@app.post("/api/users", status_code=status.HTTP_201_CREATED)
async def create_user(payload: Dict[str, Any], _: str = Depends(admin_auth), service: UserService = Depends(get_user_service)) -> dict:
    logger.info("Recebendo payload para criação de usuário")
    return await service.create_user(payload)


@app.get("/api/users/{user_id}")
async def show_user(user_id: str, service: UserService = Depends(get_user_service)) -> dict:
    user = await service.get_user_by_id(user_id)
    if user is None:
        raise UserNotFoundError(user_id)
    return user


@app.put("/api/users/{user_id}")
async def update_user(user_id: str, payload: Dict[str, Any], _: str = Depends(admin_auth), service: UserService = Depends(get_user_service)) -> dict:
    if await service.get_user_by_id(user_id) is None:
        raise UserNotFoundError(user_id)
    return await service.update_user(user_id, payload)


@app.delete("/api/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(user_id: str, _: str = Depends(admin_auth), service: UserService = Depends(get_user_service)) -> Response:
    if not await service.delete_user(user_id):
        raise UserNotFoundError(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


######### Google OAuth
def _frontend_callback(params: Dict[str, str]) -> str:
    return f"{FRONTEND_URL}/auth/callback?{urlencode(params)}"


@app.get("/api/auth/google/redirect")
async def google_redirect(google_service: GoogleService = Depends(get_google_service)) -> RedirectResponse:
    return RedirectResponse(google_service.authorization_url())


@app.get("/api/auth/google/callback")
async def google_callback(
    code: Optional[str] = None,
    error: Optional[str] = None,
    repository: UserRepository = Depends(get_user_repository),
    google_service: GoogleService = Depends(get_google_service),
) -> RedirectResponse:
    """
    Callback do OAuth: cria ou atualiza o usuário e redireciona ao frontend.
    Usuários novos ficam com registration_completed=False até concluírem o cadastro.
    """
    if error or not code:
        logger.error(f"Callback do Google OAuth sem código: error={error}")
        return RedirectResponse(_frontend_callback({"success": "false", "error": error or "missing_code"}))

    tokens = await google_service.exchange_code(code)
    google_user = await google_service.get_user_info(tokens["access_token"]) if tokens else None
    if not google_user or not google_user.get("email"):
        logger.error("Erro no callback do Google OAuth: não foi possível obter o usuário")
        return RedirectResponse(_frontend_callback({"success": "false", "error": "google_user_unavailable"}))

    logger.info(f"Google OAuth callback recebido: email={google_user['email']}, google_id={google_user['id']}")
    data: Dict[str, Any] = {
        "google_id": google_user["id"],
        "avatar": google_user.get("picture"),
        "google_token": tokens["access_token"],
    }
    if tokens.get("refresh_token"):
        data["google_refresh_token"] = tokens["refresh_token"]
    expires_at = token_expires_at(tokens.get("expires_in"))
    if expires_at:
        data["google_token_expires_at"] = expires_at

    existing = await repository.find_raw_by_email(google_user["email"])
    if existing:
        user = await repository.update(existing["_id"], data)
    else:
        try:
            user = await repository.create(dict(data, name=google_user.get("name") or google_user["email"], email=google_user["email"], registration_completed=False))
        except DuplicateKeyError:
            # Outro callback criou o mesmo e-mail em paralelo
            logger.warning(f"Usuário criado em paralelo, atualizando: email={google_user['email']}")
            existing = await repository.find_raw_by_email(google_user["email"])
            user = await repository.update(existing["_id"], data)
    logger.info(f"Usuário autenticado via Google: user_id={user['id']}, registration_completed={user['registration_completed']}")

    response = RedirectResponse(_frontend_callback({
        "success": "true",
        "user_id": user["id"],
        "name": user["name"],
        "email": user["email"],
        "avatar": user.get("avatar") or "",
        "registration_completed": "true" if user["registration_completed"] else "false",
    }))
    response.set_cookie(USER_COOKIE, user["id"], httponly=True, samesite="lax")
    return response


@app.get("/api/auth/user")
async def auth_user(request: Request, repository: UserRepository = Depends(get_user_repository)) -> JSONResponse:
    user_id = request.cookies.get(USER_COOKIE)
    user = await repository.find_by_id(user_id) if user_id else None
    if user is None:
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"authenticated": False})
    return JSONResponse(content={"authenticated": True, "user": user})


@app.post("/api/auth/logout")
async def logout() -> JSONResponse:
    response = JSONResponse(content={"message": "Logout realizado com sucesso"})
    response.delete_cookie(USER_COOKIE)
    return response


######### Registration
@app.post("/api/registration/complete")
async def complete_registration(payload: Dict[str, Any], service: RegistrationService = Depends(get_registration_service)) -> dict:
    """
    Conclui o cadastro (name, birth_date, cpf).
    Parâmetros:
        payload (dict): user_id, name, birth_date, cpf
    Retorno:
        dict: success, message e usuário atualizado; 422 com erros por campo
    """
    user_id = payload.get("user_id")
    data = {k: payload.get(k) for k in ("name", "birth_date", "cpf")}
    user = await service.complete_registration(str(user_id) if user_id is not None else "", data)
    return {"success": True, "message": MSG_REGISTRATION_DONE, "user": user}


@app.get("/api/registration/status/{user_id}")
async def registration_status(user_id: str = Path(..., description="ID do usuário"), service: RegistrationService = Depends(get_registration_service)) -> dict:
    logger.info(f"Consulta de status de cadastro: user_id={user_id}")
    result = await service.get_registration_status(user_id)
    if result["user"] is None:
        raise UserNotFoundError(user_id)
    return {"success": True, "registration_completed": result["completed"], "user": result["user"]}



######### ------------------------------ #########
if __name__ == "__main__":
    """
    Inicializa o servidor Uvicorn para rodar a API.
    """
    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    logger.info(f"Starting Uvicorn server on {host}:{port}")
    uvicorn.run(app, host=host, port=port)
