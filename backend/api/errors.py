"""
Exceções de domínio dos serviços de usuário e cadastro.
Os handlers em backend.api.app convertem cada uma na resposta HTTP adequada.
"""
from typing import Dict, List


class ValidationError(Exception):
    """Erros de validação por campo: {"campo": ["mensagem", ...]}."""

    def __init__(self, errors: Dict[str, List[str]]):
        super().__init__("Erro de validação.")
        self.errors = errors


class UserNotFoundError(Exception):
    def __init__(self, user_id: str):
        super().__init__("Usuário não encontrado.")
        self.user_id = user_id


def add_error(errors: Dict[str, List[str]], field: str, message: str) -> None:
    errors.setdefault(field, []).append(message)
