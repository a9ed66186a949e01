"""Portuguese tax identifier (NIF) validation and recovery from free-form references."""

from __future__ import annotations

import re
from typing import Optional

from withholdings.models import TaxId

TAX_ID_LENGTH = 9
VALID_FIRST_DIGITS = set("12356789")


def is_valid_tax_id(value: str) -> bool:
    """Mod-11 check: weights 9..2 over the first eight digits."""
    if not value or len(value) != TAX_ID_LENGTH or not value.isdigit():
        return False
    if value[0] not in VALID_FIRST_DIGITS:
        return False
    total = sum(int(digit) * weight for digit, weight in zip(value[:8], range(9, 1, -1)))
    remainder = total % 11
    check = 0 if remainder < 2 else 11 - remainder
    return check == int(value[8])


def extract_tax_id(reference: object) -> Optional[TaxId]:
    if reference is None:
        return None
    if isinstance(reference, float) and reference.is_integer():
        reference = int(reference)
    cleaned = re.sub(r"[^0-9-]", "", str(reference))
    digits = cleaned.replace("-", "")
    if not digits:
        return None

    if "-" in cleaned:
        # Legacy contract/property reference unless the digits happen to validate.
        if len(digits) == TAX_ID_LENGTH and is_valid_tax_id(digits):
            return TaxId(value=digits)
        return None

    if len(digits) == TAX_ID_LENGTH:
        if is_valid_tax_id(digits):
            return TaxId(value=digits)
        return TaxId(value=digits, reliable=False, note=f"Tax id {digits} fails checksum validation")

    if len(digits) < TAX_ID_LENGTH:
        padded = digits.zfill(TAX_ID_LENGTH)
        return TaxId(value=padded, reliable=False, note=f"Tax id {digits} left-padded to {padded}")

    for candidate in (digits[:TAX_ID_LENGTH], digits[-TAX_ID_LENGTH:]):
        if is_valid_tax_id(candidate):
            return TaxId(value=candidate)
    return None
