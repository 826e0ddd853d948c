"""Patient PHI field codec.

Maps plaintext PHI fields to their `<field>_encrypted` columns and back.
Structured fields (address, contacts, insurance) are serialized to canonical
JSON (sorted keys, compact separators) before encryption, so equal values
always encrypt from the same plaintext.
"""

import json
from datetime import date
from typing import Any

from pydantic import BaseModel

from aba_core.core.encryption import FieldCipher
from aba_core.core.exceptions import IntegrityViolation
from aba_core.schemas.patient import PatientPHI


PHI_TEXT_FIELDS = ("first_name", "last_name", "date_of_birth", "ssn", "phone", "email")
PHI_STRUCTURED_FIELDS = ("address", "parent_guardian", "emergency_contact", "insurance_info")
PHI_FIELDS = PHI_TEXT_FIELDS + PHI_STRUCTURED_FIELDS


def encrypted_column(field: str) -> str:
    return f"{field}_encrypted"


def _serialize(field: str, value: Any) -> str:
    if field in PHI_STRUCTURED_FIELDS:
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json", exclude_none=True)
        return json.dumps(value, sort_keys=True, separators=(",", ":"))
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def encrypt_fields(cipher: FieldCipher, record: PatientPHI | dict[str, Any]) -> dict[str, str | None]:
    """
    Encrypt PHI values into column values.

    A PatientPHI encodes every field; a dict encodes only the PHI keys it
    contains (partial updates). None and empty values map to None.
    """
    if isinstance(record, PatientPHI):
        values = {field: getattr(record, field) for field in PHI_FIELDS}
    else:
        values = {field: record[field] for field in PHI_FIELDS if field in record}

    encrypted: dict[str, str | None] = {}
    for field, value in values.items():
        if value is None or value == "":
            encrypted[encrypted_column(field)] = None
            continue
        encrypted[encrypted_column(field)] = cipher.encrypt(_serialize(field, value))
    return encrypted


def decrypt_fields(cipher: FieldCipher, row: Any) -> PatientPHI:
    """
    Decrypt the `<field>_encrypted` attributes of `row` into a PatientPHI.

    Raises:
        IntegrityViolation: A field fails MAC verification or does not decode
    """
    values: dict[str, Any] = {}
    for field in PHI_FIELDS:
        envelope = getattr(row, encrypted_column(field), None)
        if not envelope:
            values[field] = None
            continue
        plaintext = cipher.decrypt(envelope)
        if field in PHI_STRUCTURED_FIELDS:
            try:
                values[field] = json.loads(plaintext)
            except json.JSONDecodeError:
                raise IntegrityViolation(f"Encrypted field {field} does not decode")
        else:
            values[field] = plaintext
    return PatientPHI.model_validate(values)


def fields_needing_upgrade(cipher: FieldCipher, row: Any) -> list[str]:
    """PHI fields of `row` still stored as legacy envelopes."""
    return [
        field
        for field in PHI_FIELDS
        if cipher.needs_integrity_upgrade(getattr(row, encrypted_column(field), None))
    ]


def upgraded_envelopes(cipher: FieldCipher, row: Any) -> dict[str, str]:
    """
    Three-part replacements for the legacy envelopes on `row`, keyed by
    column. `row` is not modified.

    Raises:
        IntegrityViolation: A legacy envelope does not decrypt
    """
    return {
        encrypted_column(field): cipher.upgrade(getattr(row, encrypted_column(field)))
        for field in fields_needing_upgrade(cipher, row)
    }


def upgrade_fields(cipher: FieldCipher, row: Any) -> list[str]:
    """Re-encrypt legacy envelopes on `row` in place. Returns the upgraded fields."""
    upgraded = fields_needing_upgrade(cipher, row)
    for column, envelope in upgraded_envelopes(cipher, row).items():
        setattr(row, column, envelope)
    return upgraded


def verify_fields(cipher: FieldCipher, row: Any) -> list[str]:
    """PHI fields of `row` whose MAC does not verify."""
    return [
        field
        for field in PHI_FIELDS
        if not cipher.verify_integrity(getattr(row, encrypted_column(field), None))
    ]
