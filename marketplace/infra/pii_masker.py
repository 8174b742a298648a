"""
PII (Personally Identifiable Information) masking utilities.
"""
import re
from typing import Any


_UUID_RE = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.I)
_PHONE_RE = re.compile(r'^[\d\s\+\-\(\)]+$')

PII_FIELDS = {
    "email", "phone", "name", "account_name", "accountname",
    "user_id", "userid", "buyer_user_id", "buyeruserid", "viewerid", "viewer_id",
}
ACCOUNT_FIELDS = {"account_number", "accountnumber", "bank_account_number"}


def mask_email(email: str) -> str:
    """Mask email address."""
    if "@" not in email:
        return email
    local, domain = email.split("@", 1)
    masked = "**" if len(local) <= 2 else local[:2] + "*" * (len(local) - 2)
    return f"{masked}@{domain}"


def mask_phone(phone: str) -> str:
    """Mask phone number."""
    if len(phone) <= 4:
        return "*" * len(phone)
    return phone[:2] + "*" * (len(phone) - 4) + phone[-2:]


def mask_name(name: str) -> str:
    if len(name) <= 2:
        return "**"
    return name[0] + "*" * (len(name) - 2) + name[-1]


def mask_account_number(number: str) -> str:
    """Keep the last four digits of a bank account number."""
    if len(number) <= 4:
        return "*" * len(number)
    return "*" * (len(number) - 4) + number[-4:]


def mask_uuid(uuid_str: str) -> str:
    """Mask UUID (show first 8 chars only)."""
    if len(uuid_str) < 8:
        return "*" * len(uuid_str)
    return uuid_str[:8] + "-****-****-****-************"


def _mask_value(key_lower: str, value: str) -> str:
    if key_lower in ACCOUNT_FIELDS:
        return mask_account_number(value)
    if "@" in value:
        return mask_email(value)
    if _PHONE_RE.match(value):
        return mask_phone(value)
    if _UUID_RE.match(value):
        return mask_uuid(value)
    if "name" in key_lower:
        return mask_name(value)
    return mask_uuid(value) if len(value) > 10 else value


def mask_pii(value: Any, key: str = "") -> Any:
    """Mask PII in nested dicts and lists."""
    key_lower = key.lower()
    if isinstance(value, dict):
        return {k: mask_pii(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [mask_pii(item, key) for item in value]
    if isinstance(value, str) and (key_lower in PII_FIELDS or key_lower in ACCOUNT_FIELDS):
        return _mask_value(key_lower, value)
    return value


def mask_pii_in_dict(data: dict) -> dict:
    return mask_pii(data)
