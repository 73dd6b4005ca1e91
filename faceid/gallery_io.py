"""
Gallery Import / Export

Identities travel between processes as a JSON array of records:

    [
      {
        "id": "usr_a1b2c3d4",
        "name": "Alice",
        "descriptors": [[0.01, -0.12, ...], ...],
        "meanDescriptor": [0.02, -0.10, ...],     # or null
        "registeredAt": 1760650000000             # ms since epoch
      }
    ]

Vectors are float32 on both sides, so an export followed by an import
reproduces the same values and the same record order.

Import is NOT atomic: when record k is malformed, records 0..k-1 have
already been written to storage and stay there. InvalidImportFormatError
carries how many were written.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from faceid.errors import FaceIdError, InvalidImportFormatError, PersistenceError
from faceid.template_store import IdentityTemplate, TemplateStorage, now_ms

logger = logging.getLogger(__name__)


class IdentityRecord(BaseModel):
    """One identity in the exchange format."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, description="Unique identity id")
    name: Optional[str] = Field(None, description="Display name")
    descriptors: List[List[float]] = Field(..., min_length=1, description="Captured embeddings")
    mean_descriptor: Optional[List[float]] = Field(
        None, alias="meanDescriptor", description="Per-dimension mean embedding"
    )
    registered_at: Optional[int] = Field(
        None, alias="registeredAt", description="Registration time, ms since epoch"
    )


def template_to_record(template: IdentityTemplate) -> Dict[str, Any]:
    """Convert a template to an exchange-format dict (JSON-ready)."""
    return {
        "id": template.user_id,
        "name": template.user_name,
        "descriptors": template.descriptors.tolist(),
        "meanDescriptor": (
            template.mean_descriptor.tolist() if template.mean_descriptor is not None else None
        ),
        "registeredAt": int(template.registered_at),
    }


def record_to_template(record: Union[Dict[str, Any], IdentityRecord]) -> IdentityTemplate:
    """
    Validate an exchange-format record and build an IdentityTemplate.

    Raises:
        pydantic.ValidationError: If required fields are missing or mistyped.
        FaceIdError: If the vectors are inconsistent (ragged descriptors,
                     mean of the wrong length).
    """
    if not isinstance(record, IdentityRecord):
        record = IdentityRecord.model_validate(record)

    return IdentityTemplate(
        user_id=record.id,
        user_name=record.name or record.id,
        descriptors=record.descriptors,
        mean_descriptor=record.mean_descriptor,
        registered_at=record.registered_at if record.registered_at is not None else now_ms(),
    )


def export_templates(templates: Iterable[IdentityTemplate], indent: Optional[int] = 2) -> str:
    """Serialize templates to the JSON exchange format, preserving order."""
    return json.dumps([template_to_record(t) for t in templates], indent=indent)


def export_gallery(storage: TemplateStorage, indent: Optional[int] = 2) -> str:
    """Serialize every stored identity, in registration order."""
    templates = storage.get_all_users()
    logger.info(f"Exporting {len(templates)} identities")
    return export_templates(templates, indent=indent)


def parse_records(text: Union[str, bytes]) -> List[Any]:
    """
    Parse exchange-format JSON into a list of raw records.

    Raises:
        InvalidImportFormatError: If the text is not JSON or not an array.
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
        raise InvalidImportFormatError(f"Invalid JSON: {e}") from e

    if not isinstance(data, list):
        raise InvalidImportFormatError("Invalid format: expected array")

    return data


def import_gallery(storage: TemplateStorage, text: Union[str, bytes]) -> int:
    """
    Write every record of an exchange-format document to storage.

    Existing identities with the same id are replaced.

    Returns:
        Number of identities written.

    Raises:
        InvalidImportFormatError: On the first malformed record. Earlier
                                  records are kept (no rollback).
        PersistenceError: If storage fails. `imported` counts the records
                          written before the failure (no rollback).
    """
    records = parse_records(text)

    imported = 0
    for position, raw in enumerate(records):
        try:
            template = record_to_template(raw)
        except (ValidationError, FaceIdError, ValueError, TypeError) as e:
            logger.warning(f"Import aborted at record {position} after {imported} written: {e}")
            raise InvalidImportFormatError(
                f"Invalid record at index {position}: {e}", imported=imported
            ) from e

        try:
            storage.save_user(template)
        except PersistenceError as e:
            logger.error(f"Import stopped at record {position} after {imported} written: {e}")
            raise PersistenceError(
                f"Failed to store record at index {position}: {e}", imported=imported
            ) from e
        imported += 1

    logger.info(f"Imported {imported} identities")
    return imported
