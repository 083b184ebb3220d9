"""
AES-256-CBC encryption for the Focus NFe token stored on TenantFiscalConfig.

Stored format: "<iv hex>:<ciphertext hex>" with PKCS7 padding.
The key is FISCAL_ENCRYPTION_KEY (64 hex chars = 32 bytes).
"""

from __future__ import annotations

import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from app.rental.modules.fiscal.errors import FiscalConfigurationError

IV_LENGTH = 16


def _key(raw: str | None) -> bytes:
    raw = (raw or "").strip()
    if not raw:
        raise FiscalConfigurationError("FISCAL_ENCRYPTION_KEY não configurada", ["FISCAL_ENCRYPTION_KEY"])
    if len(raw) != 64:
        raise FiscalConfigurationError("FISCAL_ENCRYPTION_KEY deve ter 64 caracteres hexadecimais (32 bytes)")
    try:
        return bytes.fromhex(raw)
    except ValueError as e:
        raise FiscalConfigurationError("FISCAL_ENCRYPTION_KEY deve ser hexadecimal") from e


def encrypt_token(plain_text: str, key: str | None) -> str:
    if not plain_text:
        raise FiscalConfigurationError("Token para criptografar não pode ser vazio")
    iv = os.urandom(IV_LENGTH)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    data = padder.update(plain_text.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_key(key)), modes.CBC(iv)).encryptor()
    encrypted = encryptor.update(data) + encryptor.finalize()
    return f"{iv.hex()}:{encrypted.hex()}"


def decrypt_token(encrypted_text: str, key: str | None) -> str:
    if not encrypted_text:
        raise FiscalConfigurationError("Token criptografado vazio")
    parts = encrypted_text.split(":")
    if len(parts) != 2:
        raise FiscalConfigurationError("Formato de token criptografado inválido")
    try:
        iv, encrypted = bytes.fromhex(parts[0]), bytes.fromhex(parts[1])
        decryptor = Cipher(algorithms.AES(_key(key)), modes.CBC(iv)).decryptor()
        padded = decryptor.update(encrypted) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
    except ValueError as e:
        raise FiscalConfigurationError("Não foi possível descriptografar o token fiscal") from e


def is_encryption_configured(key: str | None) -> bool:
    try:
        _key(key)
    except FiscalConfigurationError:
        return False
    return True


def generate_encryption_key() -> str:
    return os.urandom(32).hex()


def mask_token(token: str | None) -> str | None:
    """Show only the last 4 characters."""
    if not token:
        return None
    if len(token) <= 4:
        return "*" * len(token)
    return "*" * (len(token) - 4) + token[-4:]
