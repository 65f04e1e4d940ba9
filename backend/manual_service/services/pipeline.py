"""Entry points used by the HTTP layer: generate, transfer and package a bundle.

Each run is recorded as an ``ExportJob`` row and logged under the service key
and job id. Failures mark the job and are re-raised for the outer error
boundary.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime

from manual_service.core.logging_config import log_context
from manual_service.core.metrics import bundle_generation_seconds, bundle_generations_total
from manual_service.services.bundle_builder import Bundle, BundleBuilder, load_bundle_inputs
from manual_service.services.export_packager import ExportPackager, ExportResult
from manual_service.services.transfer_engine import TransferEngine, TransferResult

logger = logging.getLogger(__name__)


async def generate_bundle(
    repository, blob_store, service_key: str, now: datetime | None = None
) -> Bundle:
    job_id = await repository.create_job(service_key, "bundle")
    with log_context(service_key=service_key, job_id=job_id):
        try:
            inputs = await load_bundle_inputs(repository, blob_store, service_key, now=now)
            started = time.perf_counter()
            bundle = BundleBuilder(inputs).build()
            bundle_generation_seconds.observe(time.perf_counter() - started)
        except Exception as exc:
            bundle_generations_total.labels(outcome="failed").inc()
            await repository.finish_job(job_id, "failed", error=str(exc))
            raise

        bundle_generations_total.labels(outcome="warnings" if bundle.warnings else "ok").inc()
        await repository.finish_job(
            job_id,
            "completed",
            detail={
                "forms": len(bundle.forms),
                "subprocesses": len(bundle.subprocesses),
                "warnings": bundle.warnings,
            },
        )
        logger.info(
            "Generated bundle: %d forms, %d subprocesses, %d warnings",
            len(bundle.forms),
            len(bundle.subprocesses),
            len(bundle.warnings),
        )
    return bundle


async def transfer_bundle(repository, engine: TransferEngine, bundle: Bundle) -> TransferResult:
    job_id = await repository.create_job(bundle.service_key, "transfer")
    with log_context(service_key=bundle.service_key, job_id=job_id):
        try:
            result = await engine.transfer(bundle)
        except Exception as exc:
            await repository.finish_job(job_id, "failed", error=str(exc))
            raise

        await repository.finish_job(
            job_id,
            "completed" if result.success else "partial",
            detail=result.to_dict(),
            download_url=result.export_folder_url,
        )
        await repository.touch_service(bundle.service_key, transferred=True)
    return result


async def package_bundle(repository, packager: ExportPackager, bundle: Bundle) -> ExportResult:
    job_id = await repository.create_job(bundle.service_key, "package")
    with log_context(service_key=bundle.service_key, job_id=job_id):
        try:
            result = await packager.package(bundle)
        except Exception as exc:
            await repository.finish_job(job_id, "failed", error=str(exc))
            raise

        await repository.finish_job(
            job_id, "completed", detail=result.to_dict(), download_url=result.download_url
        )
        await repository.touch_service(bundle.service_key, exported=True)
    return result
