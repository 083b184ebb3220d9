"""Brazilian document validators and formatters (CPF, CNPJ, CEP, UF, IM)."""

from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D")

UF_LIST = (
    "AC", "AL", "AP", "AM", "BA", "CE", "DF", "ES", "GO",
    "MA", "MT", "MS", "MG", "PA", "PB", "PR", "PE", "PI",
    "RJ", "RN", "RS", "RO", "RR", "SC", "SP", "SE", "TO",
)

_CNPJ_WEIGHTS_1 = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_WEIGHTS_2 = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)


def only_numbers(value: str | None) -> str:
    return _NON_DIGITS.sub("", value or "")


def _all_same(digits: str) -> bool:
    return len(set(digits)) == 1


def validate_cpf(cpf: str | None) -> bool:
    digits = only_numbers(cpf)
    if len(digits) != 11 or _all_same(digits):
        return False
    nums = [int(d) for d in digits]
    for check_pos in (9, 10):
        total = sum(nums[i] * (check_pos + 1 - i) for i in range(check_pos))
        remainder = (total * 10) % 11
        if remainder == 10:
            remainder = 0
        if remainder != nums[check_pos]:
            return False
    return True


def validate_cnpj(cnpj: str | None) -> bool:
    digits = only_numbers(cnpj)
    if len(digits) != 14 or _all_same(digits):
        return False
    nums = [int(d) for d in digits]
    for weights, check_pos in ((_CNPJ_WEIGHTS_1, 12), (_CNPJ_WEIGHTS_2, 13)):
        remainder = sum(n * w for n, w in zip(nums, weights)) % 11
        digit = 0 if remainder < 2 else 11 - remainder
        if digit != nums[check_pos]:
            return False
    return True


def validate_cpf_cnpj(value: str | None) -> bool:
    digits = only_numbers(value)
    if len(digits) == 11:
        return validate_cpf(digits)
    if len(digits) == 14:
        return validate_cnpj(digits)
    return False


def format_cpf(cpf: str) -> str:
    d = only_numbers(cpf)
    if len(d) != 11:
        return cpf
    return f"{d[:3]}.{d[3:6]}.{d[6:9]}-{d[9:]}"


def format_cnpj(cnpj: str) -> str:
    d = only_numbers(cnpj)
    if len(d) != 14:
        return cnpj
    return f"{d[:2]}.{d[2:5]}.{d[5:8]}/{d[8:12]}-{d[12:]}"


def format_cpf_cnpj(value: str) -> str:
    d = only_numbers(value)
    if len(d) == 11:
        return format_cpf(d)
    if len(d) == 14:
        return format_cnpj(d)
    return value


def validate_cep(cep: str | None) -> bool:
    return len(only_numbers(cep)) == 8


def format_cep(cep: str) -> str:
    d = only_numbers(cep)
    if len(d) != 8:
        return cep
    return f"{d[:5]}-{d[5:]}"


def validate_inscricao_municipal(im: str | None) -> bool:
    return 1 <= len(only_numbers(im)) <= 15


def validate_uf(uf: str | None) -> bool:
    return (uf or "").strip().upper() in UF_LIST
