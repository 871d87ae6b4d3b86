"""
Integração com o Google OAuth 2.0 via HTTP (httpx).
Falhas de rede ou respostas de erro são registradas em log e devolvidas
como None/False: quem chama decide o fallback.
"""
import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from backend.repositories.user_repository import UserRepository

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"

GOOGLE_SCOPES = "openid email profile"


def token_expires_at(expires_in: Any) -> Optional[datetime]:
    """Horário de expiração a partir de expires_in (segundos); None se ausente ou inválido."""
    if not expires_in:
        return None
    try:
        return datetime.utcnow() + timedelta(seconds=int(expires_in))
    except (TypeError, ValueError):
        return None


class GoogleService:
    def __init__(self, repository: UserRepository, client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 redirect_uri: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None, logger=None):
        """
        Inicializa o serviço Google.
        Parâmetros:
            repository (UserRepository): usado para gravar tokens renovados
            client_id, client_secret, redirect_uri (str, opcional): padrão nas variáveis GOOGLE_*
            transport (httpx.AsyncBaseTransport, opcional): transporte HTTP alternativo
            logger (logging.Logger, opcional): Logger para logs
        """
        self.repository = repository
        self.client_id = client_id or os.getenv("GOOGLE_CLIENT_ID", "")
        self.client_secret = client_secret or os.getenv("GOOGLE_CLIENT_SECRET", "")
        self.redirect_uri = redirect_uri or os.getenv("GOOGLE_REDIRECT_URI", "http://localhost:8000/api/auth/google/callback")
        self.transport = transport
        if logger is None:
            logger = logging.getLogger("google_service")
            logger.setLevel(logging.INFO)
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
            if not logger.hasHandlers():
                logger.addHandler(handler)
        self.logger = logger

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=10)

    def authorization_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPES,
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> Optional[Dict[str, Any]]:
        """
        Troca o código de autorização por tokens.
        Parâmetros:
            code (str): código recebido no callback
        Retorno:
            dict: access_token, refresh_token (opcional), expires_in; None em caso de falha
        """
        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            async with self._client() as client:
                resp = await client.post(GOOGLE_TOKEN_URL, data=data)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error(f"Falha ao trocar código de autorização do Google: {e}")
            return None

    async def get_user_info(self, access_token: str) -> Optional[Dict[str, Any]]:
        try:
            async with self._client() as client:
                resp = await client.get(GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
            resp.raise_for_status()
            info = resp.json()
            if not isinstance(info, dict):
                raise ValueError(f"resposta inesperada: {info!r}")
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error(f"Falha ao obter informações do usuário Google: {e}")
            return None
        return {
            "id": info.get("id"),
            "email": info.get("email"),
            "name": info.get("name"),
            "picture": info.get("picture"),
            "verified_email": info.get("verified_email"),
        }

    async def get_email_from_token(self, access_token: str) -> Optional[str]:
        user_info = await self.get_user_info(access_token)
        return user_info.get("email") if user_info else None

    async def is_token_valid(self, access_token: str) -> bool:
        try:
            async with self._client() as client:
                resp = await client.get(GOOGLE_TOKENINFO_URL, params={"access_token": access_token})
        except httpx.HTTPError as e:
            self.logger.warning(f"Erro ao verificar validade do token Google: {e}")
            return False
        if resp.status_code != 200:
            return False
        try:
            return int(resp.json().get("expires_in", 0)) > 0
        except (TypeError, ValueError):
            return False

    async def refresh_access_token(self, refresh_token: str) -> Optional[Dict[str, Any]]:
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            async with self._client() as client:
                resp = await client.post(GOOGLE_TOKEN_URL, data=data)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error(f"Falha ao renovar access token do Google: {e}")
            return None

    async def get_valid_access_token(self, user: Dict[str, Any]) -> Optional[str]:
        """
        Retorna um access token válido, renovando com o refresh token se necessário.
        Parâmetros:
            user (dict): documento bruto do usuário (com tokens)
        Retorno:
            str: access token válido, ou None
        """
        user_id = str(user.get("_id"))
        access_token = user.get("google_token")
        if not access_token:
            self.logger.warning(f"Usuário não possui google_token: user_id={user_id}")
            return None

        if await self.is_token_valid(access_token):
            return access_token

        self.logger.info(f"Token expirado, tentando refresh: user_id={user_id}")
        refresh_token = user.get("google_refresh_token")
        if not refresh_token:
            self.logger.warning(f"Token expirado e não há refresh_token disponível: user_id={user_id}")
            return None

        new_token = await self.refresh_access_token(refresh_token)
        if not new_token or not new_token.get("access_token"):
            self.logger.error(f"Falha ao renovar token do Google: user_id={user_id}")
            return None

        update: Dict[str, Any] = {
            "google_token": new_token["access_token"],
            "google_token_expires_at": token_expires_at(new_token.get("expires_in")),
        }
        # O Google só devolve refresh_token novo quando o rotaciona
        if new_token.get("refresh_token"):
            update["google_refresh_token"] = new_token["refresh_token"]
        await self.repository.update(user.get("_id"), update)
        self.logger.info(f"Token renovado com sucesso: user_id={user_id}")
        return new_token["access_token"]

    async def get_email_with_auto_refresh(self, user: Dict[str, Any]) -> Optional[str]:
        access_token = await self.get_valid_access_token(user)
        if not access_token:
            return user.get("email")
        user_info = await self.get_user_info(access_token)
        if user_info and user_info.get("email"):
            return user_info["email"]
        return user.get("email")
