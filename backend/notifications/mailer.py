"""
Montagem e envio do e-mail de confirmação de cadastro (SMTP via aiosmtplib).
"""
from datetime import date
from email.message import EmailMessage
from html import escape
from string import Template
from typing import Any, Dict, Optional
import os

import aiosmtplib

SMTP_HOST = os.getenv("SMTP_HOST", "mailpit")
SMTP_PORT = int(os.getenv("SMTP_PORT", "1025"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME") or None
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD") or None
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "false").lower() in ("1", "true", "yes")
MAIL_FROM_ADDRESS = os.getenv("MAIL_FROM_ADDRESS", "no-reply@cadastro.local")
APP_NAME = os.getenv("APP_NAME", "Sistema de Cadastro de Usuários")

SUBJECT = "Cadastro Concluído com Sucesso!"

_TEXT_TEMPLATE = Template(
    "Olá, $name!\n\n"
    "Seu cadastro foi concluído com sucesso em nosso sistema.\n\n"
    "Seus dados:\n"
    "$details\n\n"
    "Se você não realizou este cadastro, por favor entre em contato conosco imediatamente.\n\n"
    "Este é um e-mail automático. Por favor, não responda.\n"
    "© $year $app_name\n"
)

_HTML_TEMPLATE = Template("""<!DOCTYPE html>
<html lang="pt-BR">
<head><meta charset="UTF-8"><title>Cadastro Concluído</title></head>
<body style="font-family: 'Segoe UI', Tahoma, sans-serif; line-height: 1.6;">
  <h1>Cadastro Concluído!</h1>
  <p>Olá, <strong>$name</strong>!</p>
  <p>Seu cadastro foi concluído com sucesso em nosso sistema. Agora você tem acesso completo a todas as funcionalidades.</p>
  <h3>SEUS DADOS</h3>
  <table>
$rows
  </table>
  <p>Se você não realizou este cadastro, por favor entre em contato conosco imediatamente.</p>
  <p style="font-size: 12px;">Este é um e-mail automático. Por favor, não responda.<br>© $year $app_name</p>
</body>
</html>
""")


def _details(user: Dict[str, Any]):
    """Pares (rótulo, valor) exibidos no e-mail. CPF já vem formatado do repositório."""
    items = [("Nome", user.get("name")), ("E-mail", user.get("email"))]
    if user.get("cpf"):
        items.append(("CPF", user["cpf"]))
    if user.get("birth_date"):
        items.append(("Nascimento", date.fromisoformat(user["birth_date"]).strftime("%d/%m/%Y")))
    return items


def build_registration_email(user: Dict[str, Any], to_address: str, today: Optional[date] = None) -> EmailMessage:
    """
    Monta o e-mail de confirmação.
    Parâmetros:
        user (dict): usuário no formato público (CPF formatado)
        to_address (str): destinatário
    Retorno:
        EmailMessage: mensagem com versões texto e HTML
    """
    year = (today or date.today()).year
    details = _details(user)
    text = _TEXT_TEMPLATE.substitute(
        name=user.get("name"),
        details="\n".join(f"{label}: {value}" for label, value in details),
        year=year,
        app_name=APP_NAME,
    )
    html = _HTML_TEMPLATE.substitute(
        name=escape(str(user.get("name"))),
        rows="\n".join(f"    <tr><td>{label}:</td><td>{escape(str(value))}</td></tr>" for label, value in details),
        year=year,
        app_name=escape(APP_NAME),
    )

    msg = EmailMessage()
    msg["Subject"] = SUBJECT
    msg["From"] = MAIL_FROM_ADDRESS
    msg["To"] = to_address
    msg.set_content(text)
    msg.add_alternative(html, subtype="html")
    return msg


class Mailer:
    def __init__(self, host: str = SMTP_HOST, port: int = SMTP_PORT, username: Optional[str] = SMTP_USERNAME,
                 password: Optional[str] = SMTP_PASSWORD, use_tls: bool = SMTP_USE_TLS):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls

    async def send(self, message: EmailMessage, timeout: float = 60) -> None:
        await aiosmtplib.send(
            message,
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            start_tls=self.use_tls,
            timeout=timeout,
        )
