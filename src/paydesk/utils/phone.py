"""
Phone number validation and normalization utilities.

STK push requests must target a mobile number in E.164 format without the
leading +, e.g. 254712345678. Parsing is done with Google's libphonenumber
(via the phonenumbers package) so operators can type local formats such as
0712345678 or +254 712 345 678.
"""

import re
from typing import Optional

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberType

# Default region for parsing when no country code is provided
DEFAULT_REGION = "KE"  # Kenya

# Normalized MSISDN accepted by the gateway
MSISDN_PATTERN = re.compile(r"^\d{10,15}$")

_MOBILE_TYPES = (PhoneNumberType.MOBILE, PhoneNumberType.FIXED_LINE_OR_MOBILE)


def normalize_msisdn(phone: str, region: Optional[str] = None) -> str:
    """
    Normalize a mobile phone number to E.164 without the + prefix.

    Args:
        phone: The phone number string to normalize
        region: Optional ISO 3166-1 alpha-2 region code used when the number
                has no country code. Defaults to "KE".

    Returns:
        The normalized MSISDN

    Raises:
        ValueError: If the number is empty, unparseable, invalid or not a
                    mobile number

    Examples:
        >>> normalize_msisdn("0712345678")
        '254712345678'

        >>> normalize_msisdn("+254 712 345 678")
        '254712345678'

        >>> normalize_msisdn("254712345678")
        '254712345678'
    """
    if phone is None:
        raise ValueError("Phone number cannot be None")

    phone = phone.strip()
    if not phone:
        raise ValueError("Phone number cannot be empty")

    # Bare international digits (254...) need the + for the parser
    phone_to_parse = phone
    if MSISDN_PATTERN.match(phone) and not phone.startswith("0"):
        phone_to_parse = f"+{phone}"

    try:
        parsed = phonenumbers.parse(phone_to_parse, region or DEFAULT_REGION)
    except NumberParseException as e:
        error_msg = f"Invalid phone number format: {phone}"
        if e.error_type == NumberParseException.INVALID_COUNTRY_CODE:
            error_msg += " (invalid country code)"
        elif e.error_type == NumberParseException.NOT_A_NUMBER:
            error_msg += " (not a valid number)"
        elif e.error_type == NumberParseException.TOO_SHORT_NSN:
            error_msg += " (number too short)"
        elif e.error_type == NumberParseException.TOO_LONG:
            error_msg += " (number too long)"
        raise ValueError(error_msg)

    if not phonenumbers.is_valid_number(parsed):
        raise ValueError(f"Invalid phone number format: {phone}")

    if phonenumbers.number_type(parsed) not in _MOBILE_TYPES:
        raise ValueError(f"Not a mobile number: {phone}")

    formatted = phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
    return formatted.lstrip("+")


def mask_msisdn(msisdn: str) -> str:
    """
    Mask the middle digits of an MSISDN for operator display.

    Examples:
        >>> mask_msisdn("254712345678")
        '2547****5678'
    """
    if not msisdn or len(msisdn) < 8:
        return msisdn
    return f"{msisdn[:4]}{'*' * (len(msisdn) - 8)}{msisdn[-4:]}"
