import re

# Optional +63 / 63 / 0 prefix, then a 10-digit subscriber number led by 8 or 9.
_PH_MOBILE_RE = re.compile(r"^(?:\+63|63|0)?([89]\d{9})$")
_SEPARATORS_RE = re.compile(r"[\s\-().]")


def normalize_phone_ph(phone: str, country_code: str = "+63") -> str:
    """Normalize a Philippine mobile number to +63XXXXXXXXXX.

    Accepts +63XXXXXXXXXX, 63XXXXXXXXXX, 0XXXXXXXXXX and the bare subscriber
    number. Returns an empty string when the input is not a valid mobile number.
    """
    if not phone:
        return ""
    cleaned = _SEPARATORS_RE.sub("", phone.strip())
    m = _PH_MOBILE_RE.match(cleaned)
    if not m:
        return ""
    return country_code + m.group(1)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def mask_phone(phone: str, visible_digits: int = 2) -> str:
    if not phone:
        return ""
    normalized = normalize_phone_ph(phone) or phone
    if len(normalized) <= visible_digits:
        return normalized
    masked_portion = "*" * max(len(normalized) - visible_digits, 0)
    return masked_portion + normalized[-visible_digits:]


def mask_email(email: str) -> str:
    email = normalize_email(email)
    if "@" not in email:
        return "*" * len(email)
    local, domain = email.split("@", 1)
    if len(local) <= 1:
        return f"*@{domain}"
    return f"{local[0]}{'*' * (len(local) - 1)}@{domain}"
