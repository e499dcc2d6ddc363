"""
Brazilian phone number validation for WhatsApp delivery
"""
import re

from qrmenu.core.errors import InvalidPhoneNumber

_NON_DIGITS = re.compile(r"\D")

# Area codes (DDD) in use, by state
VALID_DDDS = frozenset({
    "11", "12", "13", "14", "15", "16", "17", "18", "19",  # SP
    "21", "22", "24",  # RJ
    "27", "28",  # ES
    "31", "32", "33", "34", "35", "37", "38",  # MG
    "41", "42", "43", "44", "45", "46",  # PR
    "47", "48", "49",  # SC
    "51", "53", "54", "55",  # RS
    "61",  # DF
    "62", "64",  # GO
    "63",  # TO
    "65", "66",  # MT
    "67",  # MS
    "68",  # AC
    "69",  # RO
    "71", "73", "74", "75", "77",  # BA
    "79",  # SE
    "81", "87",  # PE
    "82",  # AL
    "83",  # PB
    "84",  # RN
    "85", "88",  # CE
    "86", "89",  # PI
    "91", "93", "94",  # PA
    "92", "97",  # AM
    "95",  # RR
    "96",  # AP
    "98", "99",  # MA
})


def normalize_phone(phone: str) -> str:
    """
    Normalise a Brazilian number to E.164 (``+55`` + DDD + subscriber).

    Accepts 10/11 national digits, optionally prefixed with country code 55,
    with any punctuation. Mobile numbers (11 digits) must have 9 after the DDD.
    Raises InvalidPhoneNumber otherwise.
    """
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) in (12, 13) and digits.startswith("55"):
        digits = digits[2:]
    if len(digits) not in (10, 11):
        raise InvalidPhoneNumber("Phone number must have 10 or 11 digits")
    if digits[:2] not in VALID_DDDS:
        raise InvalidPhoneNumber("Invalid area code")
    if len(digits) == 11 and digits[2] != "9":
        raise InvalidPhoneNumber("Mobile numbers must start with 9 after the area code")
    return f"+55{digits}"


def mask_phone(phone: str) -> str:
    """+5511987654321 -> +55119****4321, for logs."""
    if len(phone) <= 8:
        return "****"
    return phone[:-8] + "****" + phone[-4:]
