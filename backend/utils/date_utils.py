from datetime import date, datetime
from typing import Any, Optional

ACCEPTED_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y")


def parse_date(value: Any) -> Optional[date]:
    """
    Converte a data informada pelo cliente.
    Aceita date/datetime, 'YYYY-MM-DD' e 'DD/MM/YYYY'. Retorna None se inválida.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    for fmt in ACCEPTED_DATE_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt).date()
        except ValueError:
            continue
    return None
