"""Phone number helpers for WhatsApp identifiers and log output."""

import re


def digits_only(phone: str | None) -> str:
    """Strip everything but digits.

    WhatsApp sends counterpart numbers as bare digits ("15551234567"),
    while display numbers come formatted ("+1 555-123-4567").
    """
    if not phone:
        return ""
    return re.sub(r"\D", "", phone)


def normalize_phone_e164(phone: str | None) -> str | None:
    """Normalize a WhatsApp number to E.164 (+<digits>).

    Returns:
        Phone in E.164 format or None if no digits are present
    """
    digits = digits_only(phone)
    if not digits:
        return None
    return f"+{digits}"


def mask_phone_number(phone: str | None) -> str:
    """Mask all but the last four digits for logging.

    Examples:
        15551234567 -> ******4567
    """
    digits = digits_only(phone)
    if len(digits) < 4:
        return "****"
    return f"******{digits[-4:]}"
