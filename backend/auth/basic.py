from typing import Dict
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
import os
import secrets

security = HTTPBasic()
_credentials_cache: Dict[str, str] = {}
_cache_file_path: str = ""


def _load_credentials(file_path: str) -> None:
	"""Lê 'usuario:senha' por linha; linhas vazias e iniciadas por # são ignoradas."""
	global _credentials_cache, _cache_file_path
	if file_path == _cache_file_path and _credentials_cache:
		return
	_credentials_cache = {}
	_cache_file_path = file_path
	try:
		with open(file_path, "r", encoding="utf-8") as f:
			for line in f:
				line = line.strip()
				if not line or line.startswith("#") or ":" not in line:
					continue
				username, password = line.split(":", 1)
				_credentials_cache[username] = password
	except FileNotFoundError:
		_credentials_cache = {}


def _env_credentials() -> Dict[str, str]:
	# ADMIN_USERNAME/ADMIN_PASSWORD complementam o arquivo (ex.: containers sem volume)
	username = os.getenv("ADMIN_USERNAME")
	password = os.getenv("ADMIN_PASSWORD")
	if username and password:
		return {username: password}
	return {}


async def admin_auth(credentials: HTTPBasicCredentials = Depends(security)) -> str:
	"""Protege os endpoints administrativos de escrita em /api/users."""
	credentials_file = os.getenv("BASIC_AUTH_CREDENTIALS_FILE", "backend/credentials/basic_auth.txt")
	_load_credentials(credentials_file)
	expected = _env_credentials().get(credentials.username) or _credentials_cache.get(credentials.username)
	if expected is None or not secrets.compare_digest(expected, credentials.password):
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Credenciais inválidas", headers={"WWW-Authenticate": "Basic"})
	return credentials.username
