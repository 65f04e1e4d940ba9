"""Import of master-data step rows.

Rows are upserted by (service, step) external id. A content hash decides
whether an existing row changed; unchanged rows are not rewritten.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from manual_service.schemas.mds import MdsRow

logger = logging.getLogger(__name__)

_HASHED_FIELDS = (
    "service_external_id",
    "step_external_id",
    "step_name",
    "step_type",
    "candidate_group",
    "sop_urls",
    "decision_sheet_urls",
    "document_urls",
    "document_name",
    "process_step",
)


@dataclass
class ImportSummary:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    services: list[str] = field(default_factory=list)
    services_created: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "services": self.services,
            "servicesCreated": self.services_created,
        }


def row_hash(row: MdsRow) -> str:
    joined = "|".join("" if getattr(row, f) is None else str(getattr(row, f)) for f in _HASHED_FIELDS)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def _step_values(row: MdsRow, digest: str) -> dict:
    return {
        "service_external_id": row.service_external_id,
        "step_external_id": row.step_external_id,
        "service_name": row.service_name,
        "step_name": row.step_name,
        "step_type": row.step_type,
        "candidate_group": row.candidate_group or None,
        "process_step": row.process_step,
        "sop_urls": row.sop_urls or None,
        "decision_sheet_urls": row.decision_sheet_urls or None,
        "document_urls": row.document_urls or None,
        "document_name": row.document_name or None,
        "row_hash": digest,
    }


async def import_mds_rows(repository, rows: list[MdsRow]) -> ImportSummary:
    summary = ImportSummary()
    existing = await repository.mds_row_hashes({r.service_external_id for r in rows})
    owners: dict[str, MdsRow] = {}

    for row in rows:
        if not row.step_name.strip():
            logger.warning(
                "Skipping step %s without a name",
                row.step_external_id,
                extra={"service_key": row.service_external_id},
            )
            summary.skipped += 1
            continue

        digest = row_hash(row)
        key = (row.service_external_id, row.step_external_id)
        previous = existing.get(key)
        owners.setdefault(row.service_external_id, row)
        if previous == digest:
            summary.unchanged += 1
            continue

        try:
            await repository.upsert_mds_step(_step_values(row, digest))
        except SQLAlchemyError:
            logger.exception(
                "Failed to store step %s",
                row.step_external_id,
                extra={"service_key": row.service_external_id},
            )
            summary.skipped += 1
            continue

        existing[key] = digest
        if previous is None:
            summary.inserted += 1
        else:
            summary.updated += 1

    for service_key, row in owners.items():
        created = await repository.ensure_service(
            service_key,
            row.service_name or service_key,
            performing_team=row.performing_team,
            performer_org=row.performer_org,
        )
        summary.services.append(service_key)
        if created:
            summary.services_created.append(service_key)

    logger.info(
        "MDS import: %d inserted, %d updated, %d unchanged, %d skipped",
        summary.inserted,
        summary.updated,
        summary.unchanged,
        summary.skipped,
    )
    return summary
