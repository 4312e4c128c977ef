from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.exceptions import (
    ConflictError,
    LockedError,
    NotFoundError,
    RetryLimitError,
    ValidationFailedError,
)
from therapy_chat.core.metrics import training_exports_total
from therapy_chat.models.database import FineTuneSnapshot
from therapy_chat.schemas.export import (
    ExportFilterOptions,
    ExportResponse,
    PreviewResponse,
    RetryRequest,
    SnapshotCreate,
)
from therapy_chat.services import scheduler
from therapy_chat.services.database import DatabaseService, database_service
from therapy_chat.services.fine_tune import FineTuneClient, fine_tune_client
from therapy_chat.services.training import (
    current_data_version,
    fetch_training_rows,
    generate_jsonl,
    get_filter_hash,
    rows_to_csv,
    summarize_emotions,
)
from therapy_chat.utils.dates import ensure_utc, utc_now

logger = get_logger(__name__)

DUPLICATE_SNAPSHOT_MESSAGE = "A snapshot with the same filters already exists."


# ==================================================
# Export Service
# ==================================================
class ExportService:
    """
    Preview, snapshot and fine-tune export of the training data.

    Locks: an export for (user, filter hash) blocks identical exports until
    `locked_until`; a retry for a snapshot is blocked while its lock's
    `expires_at` is in the future.
    """

    def __init__(
        self,
        db: Optional[DatabaseService] = None,
        client: Optional[FineTuneClient] = None,
        kickoff: Optional[Callable[..., Any]] = None,
        poller: Optional[Callable[..., Any]] = None,
    ):
        self.db = db or database_service
        self.client = client or fine_tune_client
        self.kickoff = kickoff or scheduler.kickoff_poll_fine_tune_status
        self.poller = poller or scheduler.poll_fine_tune_status

    # --------------------------------------------------
    # Preview / CSV
    # --------------------------------------------------
    async def preview(self, filters: ExportFilterOptions) -> PreviewResponse:
        rows, total = await fetch_training_rows(filters, self.db)
        return PreviewResponse(annotations=rows, total=total, summary=summarize_emotions(rows))

    async def training_csv(self, filters: Optional[ExportFilterOptions] = None) -> str:
        rows, _ = await fetch_training_rows(filters or ExportFilterOptions(), self.db)
        return rows_to_csv(rows)

    # --------------------------------------------------
    # Snapshots
    # --------------------------------------------------
    async def is_duplicate(self, filter_hash: str) -> bool:
        return await self.db.find_snapshot_by_hash(filter_hash) is not None

    async def create_snapshot(self, user_id: str, request: SnapshotCreate) -> FineTuneSnapshot:
        canonical = request.filters.canonical()
        snapshot = FineTuneSnapshot(
            name=request.name,
            version=request.version,
            filters=canonical,
            filter_hash=get_filter_hash(canonical),
            data_version=await current_data_version(self.db),
            user_id=user_id,
            model_version=settings.FINE_TUNE_BASE_MODEL,
            job_status="pending",
        )
        snapshot = await self.db.insert_snapshot(snapshot)
        logger.info("snapshot_created", snapshot_id=snapshot.id, filter_hash=snapshot.filter_hash)
        return snapshot

    # --------------------------------------------------
    # Fine-tune export
    # --------------------------------------------------
    async def create_fine_tune(self, user_id: str, filters: ExportFilterOptions, name: str) -> ExportResponse:
        canonical = filters.canonical()
        filter_hash = get_filter_hash(canonical)
        now = utc_now()

        lock = await self.db.get_active_export_lock(user_id, filter_hash, now)
        if lock is not None:
            training_exports_total.labels(outcome="locked").inc()
            raise LockedError(
                "Export locked",
                locked=True,
                expiresAt=ensure_utc(lock.locked_until).isoformat(),
            )

        # Rows are read before the snapshot exists: includeCorrected compares
        # against the latest snapshot time
        rows, _ = await fetch_training_rows(filters, self.db)
        if len(rows) < settings.MIN_TRAINING_EXAMPLES:
            training_exports_total.labels(outcome="failed").inc()
            raise ValidationFailedError(
                f"Training file must have at least {settings.MIN_TRAINING_EXAMPLES} examples"
            )

        # The unique (filter_hash, data_version) constraint is the duplicate check
        try:
            snapshot = await self.db.insert_snapshot(
                FineTuneSnapshot(
                    name=name,
                    version=now.strftime("%Y%m%d%H%M%S"),
                    filters=canonical,
                    filter_hash=filter_hash,
                    data_version=await current_data_version(self.db),
                    user_id=user_id,
                    model_version=settings.FINE_TUNE_BASE_MODEL,
                    job_status="pending",
                )
            )
        except ConflictError as e:
            training_exports_total.labels(outcome="duplicate").inc()
            raise LockedError(DUPLICATE_SNAPSHOT_MESSAGE) from e

        file_name = f"fine-tune/{snapshot.id}.jsonl"
        try:
            uploaded = await self.client.upload_training_file(file_name, generate_jsonl(rows))
            job = await self.client.create_job(uploaded["id"], snapshot.model_version)
        except Exception as e:
            # No job exists; free the (filter_hash, data_version) key
            await self.db.delete_snapshot(snapshot.id)
            training_exports_total.labels(outcome="failed").inc()
            logger.error("fine_tune_export_failed", snapshot_id=snapshot.id, filter_hash=filter_hash, error=str(e))
            raise

        await self.db.update_snapshot(
            snapshot.id,
            file_id=uploaded["id"],
            file_name=file_name,
            file_path=file_name,
            file_uploaded_at=utc_now(),
            job_id=job["id"],
            job_status=job.get("status") or "pending",
        )
        await self.db.create_lock(
            snapshot_id=snapshot.id,
            user_id=user_id,
            filter_hash=filter_hash,
            context="export",
            expires_at=now + timedelta(minutes=settings.EXPORT_LOCK_TTL_MINUTES),
            locked_until=now + timedelta(minutes=settings.EXPORT_COOLDOWN_MINUTES),
        )
        await self.db.upsert_event(
            ignore_duplicates=True,
            snapshot_id=snapshot.id,
            job_id=job["id"],
            user_id=user_id,
            status=job.get("status") or "pending",
            model_version=snapshot.model_version,
            message="Job created",
            filters=canonical,
        )
        self.kickoff(snapshot.id, job["id"])

        training_exports_total.labels(outcome="created").inc()
        logger.info("fine_tune_export_created", snapshot_id=snapshot.id, job_id=job["id"], rows=len(rows))
        return ExportResponse(jobId=job["id"], filePath=file_name, snapshotId=snapshot.id)

    # --------------------------------------------------
    # Retry
    # --------------------------------------------------
    async def retry_failed(self, user_id: str, request: RetryRequest) -> Dict[str, Any]:
        snapshot_id = request.snapshotId
        if not snapshot_id and request.job_id:
            event = await self.db.latest_event_for_job(request.job_id)
            if event is None:
                raise ValidationFailedError("Could not resolve snapshotId from jobId")
            snapshot_id = event.snapshot_id
        if not snapshot_id:
            raise ValidationFailedError("Missing snapshotId or jobId")

        snapshot = await self.db.get_snapshot(snapshot_id)
        if snapshot is None:
            raise NotFoundError("Snapshot not found")
        if snapshot.retry_count >= settings.SNAPSHOT_RETRY_LIMIT:
            raise RetryLimitError(f"Retry limit reached ({settings.SNAPSHOT_RETRY_LIMIT})")
        if snapshot.job_status == "succeeded" or snapshot.archived:
            raise ValidationFailedError("Snapshot already completed or archived")

        now = utc_now()
        if request.auto_retry:
            latest = await self.db.latest_event_for_snapshot(snapshot_id)
            if latest is not None and now - ensure_utc(latest.created_at) < timedelta(
                minutes=settings.EXPORT_COOLDOWN_MINUTES
            ):
                raise RetryLimitError("Retry cooldown active")

        if await self.db.get_active_snapshot_lock(snapshot_id, now) is not None:
            raise ConflictError("Retry already in progress")

        rows, _ = await fetch_training_rows(ExportFilterOptions.model_validate(snapshot.filters), self.db)
        if len(rows) < settings.MIN_TRAINING_EXAMPLES:
            raise ValidationFailedError(
                f"Training file must have at least {settings.MIN_TRAINING_EXAMPLES} examples"
            )

        file_name = snapshot.file_path or f"fine-tune/retry-{snapshot.id}.jsonl"
        uploaded = await self.client.upload_training_file(file_name, generate_jsonl(rows))
        job = await self.client.create_job(uploaded["id"], snapshot.model_version)

        await self.db.create_lock(
            snapshot_id=snapshot_id,
            user_id=user_id,
            filter_hash=snapshot.filter_hash,
            context=request.retry_origin or "manual",
            expires_at=now + timedelta(minutes=settings.EXPORT_LOCK_TTL_MINUTES),
            locked_until=now + timedelta(minutes=settings.EXPORT_COOLDOWN_MINUTES),
        )
        retry_count = snapshot.retry_count + 1
        await self.db.upsert_event(
            snapshot_id=snapshot_id,
            job_id=job["id"],
            user_id=user_id,
            status="retrying",
            retry_reason=request.retry_reason,
            retry_count=min(retry_count, settings.SNAPSHOT_RETRY_LIMIT),
            auto_retry=request.auto_retry,
            retry_origin=request.retry_origin,
            model_version=snapshot.model_version,
            filters=snapshot.filters,
        )
        await self.db.update_snapshot(
            snapshot_id,
            retry_count=retry_count,
            job_id=job["id"],
            file_id=uploaded["id"],
            file_path=file_name,
            job_status=job.get("status") or "pending",
            completed_at=None,
        )
        self.poller(snapshot_id, job["id"])

        logger.info(
            "fine_tune_retry_started",
            snapshot_id=snapshot_id,
            job_id=job["id"],
            retry_count=retry_count,
            origin=request.retry_origin,
        )
        return {"success": True, "jobId": job["id"]}

    async def clear_expired_locks(self) -> int:
        deleted = await self.db.delete_expired_locks(utc_now())
        logger.info("expired_locks_cleared", deleted=deleted)
        return deleted


export_service = ExportService()
