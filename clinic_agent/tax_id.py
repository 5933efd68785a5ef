"""Brazilian CPF (individual tax id) normalisation and validation."""

from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D")


def normalize_cpf(raw: str) -> str:
    """Strip punctuation: ``"123.456.789-09"`` → ``"12345678909"``."""
    return _NON_DIGITS.sub("", raw or "")


def _check_digit(digits: str, weight_start: int) -> int:
    total = sum(int(d) * (weight_start - i) for i, d in enumerate(digits))
    remainder = (total * 10) % 11
    return 0 if remainder == 10 else remainder


def is_valid_cpf(raw: str) -> bool:
    """Validate length, reject repeated-digit sequences and verify both check digits."""
    cpf = normalize_cpf(raw)
    if len(cpf) != 11:
        return False
    if cpf == cpf[0] * 11:
        return False
    if _check_digit(cpf[:9], 10) != int(cpf[9]):
        return False
    return _check_digit(cpf[:10], 11) == int(cpf[10])


def format_cpf(cpf: str | None) -> str:
    """``"12345678909"`` → ``"123.456.789-09"``; anything else is returned as-is."""
    digits = normalize_cpf(cpf or "")
    if len(digits) != 11:
        return cpf or ""
    return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"
