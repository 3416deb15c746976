import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from .config import DATA_ENCRYPTION_KEY, SECRET_KEY

_data_fernet: Fernet | None = None
ENCRYPTED_PREFIX = "enc:"
MEMBER_PII_FIELDS = ("lot", "name", "email", "address")


def get_data_fernet() -> Fernet:
    global _data_fernet
    if _data_fernet is None:
        key = DATA_ENCRYPTION_KEY
        if not key:
            key = base64.urlsafe_b64encode(hashlib.sha256(SECRET_KEY.encode()).digest()).decode()
        _data_fernet = Fernet(key.encode())
    return _data_fernet


def encrypt_value(value: str | None) -> str | None:
    if value is None or value == "":
        return value
    if value.startswith(ENCRYPTED_PREFIX):
        return value
    encrypted = get_data_fernet().encrypt(value.encode()).decode()
    return f"{ENCRYPTED_PREFIX}{encrypted}"


def decrypt_value(value: str | None) -> str | None:
    # rows written before encryption was enabled are plain text
    if not value or not value.startswith(ENCRYPTED_PREFIX):
        return value
    token = value[len(ENCRYPTED_PREFIX):]
    try:
        return get_data_fernet().decrypt(token.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted data")


def encrypt_member_fields(values: dict) -> dict:
    return {k: encrypt_value(v) if k in MEMBER_PII_FIELDS else v for k, v in values.items()}


def member_contact(member) -> dict:
    return {field: decrypt_value(getattr(member, field)) or "" for field in MEMBER_PII_FIELDS}
