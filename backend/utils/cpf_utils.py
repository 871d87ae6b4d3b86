"""
Módulo utilitário para normalização, validação e formatação de CPF.
Única implementação do algoritmo dos dígitos verificadores: usada pelo
repositório (gravação/leitura) e pelos serviços de cadastro.
"""
import re
from typing import Optional

CPF_LENGTH = 11

# Motivos internos de rejeição
CPF_INVALID_LENGTH = "invalid_length"
CPF_REPEATED_DIGITS = "repeated_digits"
CPF_CHECKSUM_MISMATCH = "checksum_mismatch"

_NON_DIGITS = re.compile(r'[^0-9]')


class CPFUtils:
    @staticmethod
    def normalize_cpf(cpf: str) -> str:
        """
        Remove caracteres não numéricos do CPF.
        Parâmetros:
            cpf (str): CPF em qualquer formato
        Retorno:
            str: CPF apenas com dígitos (sem completar nem truncar)
        Exemplo: '123.456.789-09' -> '12345678909'
        """
        return _NON_DIGITS.sub('', cpf)

    @staticmethod
    def format_cpf(cpf: str) -> str:
        """
        Formata um CPF já normalizado como XXX.XXX.XXX-XX.
        Não remove pontuação: a entrada deve vir de normalize_cpf.
        Parâmetros:
            cpf (str): CPF apenas com dígitos
        Retorno:
            str: CPF formatado, ou a entrada inalterada se não tiver 11 caracteres
        """
        if len(cpf) != CPF_LENGTH:
            return cpf
        return f"{cpf[:3]}.{cpf[3:6]}.{cpf[6:9]}-{cpf[9:]}"

    @staticmethod
    def calculate_check_digit(digits: str) -> int:
        """
        Calcula um dígito verificador (módulo 11) sobre o prefixo informado.
        Os pesos vão de len(digits) + 1 até 2.
        """
        weight = len(digits) + 1
        total = sum(int(d) * (weight - i) for i, d in enumerate(digits))
        remainder = total % 11
        return 0 if remainder < 2 else 11 - remainder

    @staticmethod
    def check_cpf(cpf: str) -> Optional[str]:
        """
        Valida o CPF e informa o motivo da rejeição.
        Parâmetros:
            cpf (str): CPF em qualquer formato
        Retorno:
            str: CPF_INVALID_LENGTH, CPF_REPEATED_DIGITS, CPF_CHECKSUM_MISMATCH
            ou None se válido
        """
        cpf = CPFUtils.normalize_cpf(cpf)
        if len(cpf) != CPF_LENGTH:
            return CPF_INVALID_LENGTH
        # Sequências repetidas passam no cálculo mas nunca são emitidas
        if cpf == cpf[0] * CPF_LENGTH:
            return CPF_REPEATED_DIGITS
        if CPFUtils.calculate_check_digit(cpf[:9]) != int(cpf[9]):
            return CPF_CHECKSUM_MISMATCH
        if CPFUtils.calculate_check_digit(cpf[:10]) != int(cpf[10]):
            return CPF_CHECKSUM_MISMATCH
        return None

    @staticmethod
    def is_valid_cpf(cpf: str) -> bool:
        """
        Valida CPF pelo algoritmo dos dígitos verificadores.
        Aceita tanto a forma normalizada quanto a formatada.
        Parâmetros:
            cpf (str): CPF em qualquer formato
        Retorno:
            bool: True se válido, False caso contrário
        """
        return CPFUtils.check_cpf(cpf) is None
