"""Record mapper between raw documents and typed records.

Both stores speak plain dicts (JSON documents with camelCase keys).  The
mapper turns them into ``SyncEnvelope`` subclasses on the way in and back
into documents on the way out.

Mapping rules:

1. **Kind lookup** -- ``MODEL_BY_KIND`` picks the model class.
2. **Validation** -- pydantic checks required envelope fields and value
   ranges; a failure becomes ``RecordSchemaError``.
3. **Lenient batches** -- ``parse_records(strict=False)`` logs and skips
   invalid documents so one bad remote record cannot abort a cycle.
4. **Verbatim output** -- ``to_document`` writes camelCase keys, keeps
   unknown fields, and omits unset optionals.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from expense_sync.errors import RecordSchemaError
from expense_sync.sync.models import MODEL_BY_KIND, EntityKind, SyncEnvelope

logger = logging.getLogger(__name__)


def parse_record(
    kind: EntityKind, document: Mapping[str, Any]
) -> SyncEnvelope:
    """Validate one document as a record of *kind*.

    Raises:
        RecordSchemaError: If the document is not a mapping or fails
            validation.
    """
    model = MODEL_BY_KIND[kind]
    if not isinstance(document, Mapping):
        raise RecordSchemaError(
            f"Expected a {kind.value} document, got {type(document).__name__}",
            kind=kind.value,
        )
    try:
        return model.model_validate(dict(document))
    except ValidationError as exc:
        record_id = document.get("id")
        fields = sorted(
            {
                ".".join(str(part) for part in err["loc"]) or "<root>"
                for err in exc.errors()
            }
        )
        raise RecordSchemaError(
            f"Invalid {kind.value} record {record_id!r}: "
            f"bad or missing fields {fields}",
            kind=kind.value,
            record_id=record_id if isinstance(record_id, str) else None,
        ) from exc


def parse_records(
    kind: EntityKind,
    documents: Iterable[Mapping[str, Any]],
    *,
    strict: bool = True,
) -> tuple[list[SyncEnvelope], int]:
    """Validate a batch of documents.

    Args:
        kind: Entity kind of every document.
        documents: Raw documents.
        strict: When ``True`` the first invalid document raises.  When
            ``False`` invalid documents are logged and skipped.

    Returns:
        ``(records, skipped)`` where *skipped* counts dropped documents.
    """
    records: list[SyncEnvelope] = []
    skipped = 0
    for document in documents:
        try:
            records.append(parse_record(kind, document))
        except RecordSchemaError as exc:
            if strict:
                raise
            skipped += 1
            logger.warning(
                "Skipping %s record: %s",
                kind.value,
                exc,
                extra={"kind": kind.value, "record_id": exc.record_id},
            )
    return records, skipped


def to_document(record: SyncEnvelope) -> dict[str, Any]:
    """Serialise *record* to a camelCase document."""
    return record.model_dump(by_alias=True, exclude_none=True, mode="json")


def to_documents(records: Iterable[SyncEnvelope]) -> list[dict[str, Any]]:
    """Serialise every record in *records*."""
    return [to_document(r) for r in records]
