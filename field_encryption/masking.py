"""
Display masking for encrypted field values.

Read surfaces (data entry forms, reports and exports, survey pages) show a
fixed token in place of a tagged field's placeholder. Masking only inspects the
value's shape; it never decrypts and never needs the key.
"""

from __future__ import annotations

from typing import Any, Collection, Dict, Iterable, List, Mapping

from .codec import is_encrypted

ENCRYPTED_DISPLAY_TOKEN = "[ENCRYPTED]"

PRIVACY_NOTICE = (
    "Privacy Notice: This form contains encrypted fields that are hidden for privacy protection."
)


def mask(value: Any, tagged_fields: Collection[str], field_name: str) -> Any:
    """Return the display token for a tagged, encrypted value; else ``value``."""
    if field_name in tagged_fields and is_encrypted(value):
        return ENCRYPTED_DISPLAY_TOKEN
    return value


def mask_record(values: Mapping[str, Any], tagged_fields: Collection[str]) -> Dict[str, Any]:
    """Mask every field of one record's values."""
    return {name: mask(value, tagged_fields, name) for name, value in values.items()}


def mask_rows(
    rows: Iterable[Mapping[str, Any]], tagged_fields: Collection[str]
) -> List[Dict[str, Any]]:
    """Mask report/export rows."""
    return [mask_record(row, tagged_fields) for row in rows]


def masked_fields(values: Mapping[str, Any], tagged_fields: Collection[str]) -> List[str]:
    """Fields whose displayed value is the token (rendered read-only on forms)."""
    return [name for name, value in values.items() if name in tagged_fields and is_encrypted(value)]
