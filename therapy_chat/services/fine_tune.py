import logging
from typing import Any, Dict, Optional, Union

from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, InternalServerError, OpenAIError, RateLimitError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_incrementing,
)

from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.core.exceptions import NotFoundError, QuotaExceededError, RetryLimitError, UpstreamError
from therapy_chat.core.metrics import fine_tune_status_total
from therapy_chat.models.snapshot import TERMINAL_JOB_STATUSES
from therapy_chat.schemas.export import FineTuneStatusPayload, RetryRequest
from therapy_chat.services.database import DatabaseService, database_service
from therapy_chat.services.email import EmailService, email_service
from therapy_chat.services.llm import is_quota_error
from therapy_chat.utils.dates import utc_now

logger = get_logger(__name__)

_TRANSIENT_ERRORS = (RateLimitError, APITimeoutError, APIConnectionError, InternalServerError)


def _should_retry(error: BaseException) -> bool:
    return isinstance(error, _TRANSIENT_ERRORS) and not is_quota_error(error)


# ==================================================
# Fine-tune Client
# ==================================================
class FineTuneClient:
    """Thin wrapper over the OpenAI files / fine-tuning endpoints returning plain dicts."""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY or "unset")
        return self._client

    async def _guard(self, operation: str, coro) -> Any:
        try:
            return await coro
        except OpenAIError as e:
            if is_quota_error(e):
                raise QuotaExceededError() from e
            logger.error("fine_tune_api_failed", operation=operation, error_type=type(e).__name__, error=str(e))
            raise UpstreamError(f"OpenAI {operation} failed: {e}") from e

    @retry(
        stop=stop_after_attempt(settings.MAX_LLM_CALL_RETRIES),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(_should_retry),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _upload(self, file_name: str, content: bytes):
        return await self.client.files.create(file=(file_name, content, "application/jsonl"), purpose="fine-tune")

    @retry(
        stop=stop_after_attempt(settings.MAX_LLM_CALL_RETRIES),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(_should_retry),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _create(self, file_id: str, model: str):
        return await self.client.fine_tuning.jobs.create(training_file=file_id, model=model)

    @retry(
        stop=stop_after_attempt(settings.MAX_LLM_CALL_RETRIES),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(_should_retry),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _retrieve(self, job_id: str):
        return await self.client.fine_tuning.jobs.retrieve(job_id)

    async def upload_training_file(self, file_name: str, content: str) -> Dict[str, Any]:
        uploaded = await self._guard("file upload", self._upload(file_name, content.encode("utf-8")))
        logger.info("training_file_uploaded", file_id=uploaded.id, file_name=file_name)
        return uploaded.model_dump()

    async def create_job(self, file_id: str, model: Optional[str] = None) -> Dict[str, Any]:
        job = await self._guard("job creation", self._create(file_id, model or settings.FINE_TUNE_BASE_MODEL))
        logger.info("fine_tune_job_created", job_id=job.id, status=job.status)
        return job.model_dump()

    async def retrieve_job(self, job_id: str) -> Dict[str, Any]:
        job = await self._guard("job retrieval", self._retrieve(job_id))
        return job.model_dump()


fine_tune_client = FineTuneClient()


# ==================================================
# Fine-tune Status Notifier
# ==================================================
class FineTuneNotifier:
    """
    Applies a job status report to its snapshot, records the event, emails the
    owner, and triggers an automatic retry when the job failed.
    """

    def __init__(
        self,
        db: Optional[DatabaseService] = None,
        email: Optional[EmailService] = None,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
    ):
        self.db = db or database_service
        self.email = email or email_service
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    async def handle(self, payload: Union[FineTuneStatusPayload, Dict[str, Any]]) -> Dict[str, Any]:
        if not isinstance(payload, FineTuneStatusPayload):
            payload = FineTuneStatusPayload.model_validate(payload)

        job_id, status = payload.id, payload.status
        fine_tune_status_total.labels(status=status).inc()

        snapshot = await self.db.get_snapshot_by_job(job_id)
        if snapshot is None:
            logger.error("fine_tune_snapshot_not_found", job_id=job_id, snapshot_id=payload.snapshotId)
            raise NotFoundError("Snapshot not found for job")

        terminal = status in TERMINAL_JOB_STATUSES
        snapshot = await self.db.update_snapshot(
            snapshot.id,
            job_status=status,
            completed_at=utc_now() if terminal else None,
        )
        error_message = (payload.error or {}).get("message")

        if snapshot.retry_count >= settings.SNAPSHOT_RETRY_LIMIT and status != "succeeded":
            await self.db.update_snapshot(snapshot.id, job_status="failed", completed_at=utc_now())
            await self.db.upsert_event(
                ignore_duplicates=True,
                snapshot_id=snapshot.id,
                job_id=job_id,
                user_id=snapshot.user_id,
                status="failed",
                model_version=payload.model,
                error_details=f"Retry limit reached ({settings.SNAPSHOT_RETRY_LIMIT})",
                message=f"Job {status}",
                auto_retry=True,
                filters=snapshot.filters,
            )
            logger.warning("fine_tune_retry_limit_reached", snapshot_id=snapshot.id, job_id=job_id)
            raise RetryLimitError(f"Retry limit reached ({settings.SNAPSHOT_RETRY_LIMIT})")

        await self.db.upsert_event(
            ignore_duplicates=True,
            snapshot_id=snapshot.id,
            job_id=job_id,
            user_id=snapshot.user_id,
            status=status,
            model_version=payload.model,
            error_details=error_message,
            message=f"Job {status}",
            auto_retry=True,
            filters=snapshot.filters,
        )
        logger.info("fine_tune_status_recorded", snapshot_id=snapshot.id, job_id=job_id, status=status)

        owner = await self.db.get_user(snapshot.user_id)
        if owner is not None and owner.email:
            if status == "succeeded":
                await self._notify(
                    owner.email,
                    "🎓 Your fine-tune job succeeded!",
                    f"Your fine-tuning job {job_id} completed successfully.",
                )
            elif status == "failed":
                await self._notify(
                    owner.email,
                    "❌ Fine-tune job failed",
                    f"Your fine-tuning job {job_id} has failed. We will attempt an automatic retry.",
                )

        if status == "failed":
            await self._auto_retry(snapshot.id, snapshot.user_id, job_id, snapshot.filters)

        return {"ok": True, "snapshotId": snapshot.id, "status": status}

    async def _notify(self, to: str, subject: str, text: str) -> None:
        try:
            await self.email.send(to, subject, f"<p>{text}</p>")
        except UpstreamError as e:
            logger.error("fine_tune_email_failed", to=to, error=str(e))

    async def _auto_retry(self, snapshot_id: str, user_id: str, job_id: str, filters: Dict[str, Any]) -> None:
        from therapy_chat.services.exports import export_service

        request = RetryRequest(
            snapshotId=snapshot_id,
            job_id=job_id,
            auto_retry=True,
            retry_reason="Auto retry from failure webhook",
            retry_origin="webhook",
        )
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_incrementing(start=self.retry_backoff, increment=self.retry_backoff),
                reraise=True,
            ):
                with attempt:
                    await export_service.retry_failed(user_id, request)
        except Exception as e:
            logger.error("fine_tune_auto_retry_failed", snapshot_id=snapshot_id, job_id=job_id, error=str(e))
            await self.db.upsert_event(
                snapshot_id=snapshot_id,
                job_id=job_id,
                user_id=user_id,
                status="retry_failed",
                error_details="Retry trigger failed",
                message="Retry attempt failed inside webhook",
                filters=filters,
            )


fine_tune_notifier = FineTuneNotifier()
