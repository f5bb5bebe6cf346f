"""Contact identifier normalization.

WhatsApp delivers sender numbers without a plus sign ("917359275948"),
while the dashboard posts them formatted ("+91 735-927 5948"). Both must
land in the same ledger partition, so every identifier goes through
normalize_contact_id before touching the ledger.
"""

import re

from leadflow.errors import ValidationError

# Whitespace and the separators people type into phone numbers
_SEPARATORS = re.compile(r"[\s\-().]")

MIN_CONTACT_ID_LENGTH = 3


def normalize_contact_id(raw: str) -> str:
    """Canonicalize a phone-based contact identifier.

    Strips whitespace and separators, collapses any leading plus signs and
    prepends exactly one "+". Idempotent.

    Args:
        raw: Identifier as received from the provider or the API caller.

    Returns:
        Canonical identifier, e.g. "+917359275948".

    Raises:
        ValidationError: If nothing usable remains after normalization.
    """
    if not isinstance(raw, str):
        raise ValidationError("contact identifier must be a string")

    stripped = _SEPARATORS.sub("", raw).lstrip("+")
    normalized = f"+{stripped}"

    if len(normalized) < MIN_CONTACT_ID_LENGTH:
        raise ValidationError(
            "Invalid phone number",
            details={"received": raw, "normalized": normalized},
        )
    return normalized
