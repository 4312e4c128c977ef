"""Training-data selection and serialization for fine-tuning exports."""
import csv
import hashlib
import io
import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.sql import Select

from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger
from therapy_chat.models.database import Annotation, ChatSession, EmotionLog, Message
from therapy_chat.schemas.export import EmotionSummary, ExportFilterOptions, TrainingRow
from therapy_chat.services.database import database_service
from therapy_chat.utils.dates import ensure_utc
from therapy_chat.utils.sanitization import sanitize_training_text

logger = get_logger(__name__)

# Ranges that mean "no filter"
FULL_INTENSITY_RANGE = (0.1, 1.0)
FULL_ALIGNMENT_RANGE = (0.0, 1.0)

CSV_COLUMNS = [
    "source_type",
    "source_id",
    "message_id",
    "role",
    "content",
    "emotion",
    "tone",
    "intensity",
    "topic",
    "note",
    "tagged_at",
    "annotation_updated_at",
]

TRAINING_SYSTEM_PROMPT = (
    "Given a message, extract:\n"
    "- emotion\n"
    "- tone\n"
    "- intensity (0.0 to 1.0)\n"
    "- topic\n"
    "- corrected assistant message (as 'message')\n"
    "- optional therapist note"
)


# ==================================================
# Filter Hash
# ==================================================
def get_filter_hash(filters: Mapping[str, Any]) -> str:
    """SHA-256 of the filters serialized with sorted keys, so key order never matters."""
    stable = json.dumps(filters, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(stable.encode("utf-8")).hexdigest()


# ==================================================
# Training View
# ==================================================
def training_view():
    """
    Tagged messages with the newest therapist correction (if any) applied.
    Returned as a subquery whose columns match `TrainingRow`.
    """
    latest = (
        select(
            Annotation.source_id.label("source_id"),
            Annotation.source_type.label("source_type"),
            func.max(Annotation.updated_at).label("latest_at"),
        )
        .group_by(Annotation.source_id, Annotation.source_type)
        .subquery("latest_annotation")
    )

    alignment = func.coalesce(Annotation.corrected_alignment_score, EmotionLog.alignment_score)
    query = (
        select(
            EmotionLog.source_type.label("source_type"),
            EmotionLog.source_id.label("source_id"),
            Message.id.label("message_id"),
            Message.session_id.label("session_id"),
            ChatSession.user_id.label("user_id"),
            Message.role.label("role"),
            Message.content.label("content"),
            func.coalesce(Annotation.corrected_emotion, EmotionLog.emotion).label("emotion"),
            func.coalesce(Annotation.corrected_tone, EmotionLog.tone).label("tone"),
            func.coalesce(Annotation.corrected_intensity, EmotionLog.intensity).label("intensity"),
            func.coalesce(Annotation.corrected_topic, EmotionLog.topic).label("topic"),
            alignment.label("alignment_score"),
            Annotation.note.label("note"),
            Annotation.flag_reason.label("flag_reason"),
            Annotation.updated_at.label("annotation_updated_at"),
            Annotation.updated_by.label("annotation_updated_by"),
            EmotionLog.created_at.label("tagged_at"),
            func.coalesce(alignment, 0.0).label("score"),
            ChatSession.shared_with.label("shared_with"),
        )
        .select_from(EmotionLog)
        .join(Message, Message.id == EmotionLog.source_id)
        .join(ChatSession, ChatSession.id == Message.session_id)
        .outerjoin(
            latest,
            and_(
                latest.c.source_id == EmotionLog.source_id,
                latest.c.source_type == EmotionLog.source_type,
            ),
        )
        .outerjoin(
            Annotation,
            and_(
                Annotation.source_id == EmotionLog.source_id,
                Annotation.source_type == EmotionLog.source_type,
                Annotation.updated_at == latest.c.latest_at,
            ),
        )
    )
    return query.subquery("training_view")


def build_filtered_training_query(
    filters: ExportFilterOptions,
    latest_snapshot_at: Optional[datetime] = None,
) -> Select:
    """
    Compose the parameterized select over the training view.
    `supporting_therapists` is not applied here (see `fetch_training_rows`); when it
    is set the limit is left off so the containment check sees every candidate.
    """
    view = training_view()
    query = select(*view.c)

    in_filters = (
        ("user_id", filters.users),
        ("role", filters.message_role),
        ("annotation_updated_by", filters.reviewed_by),
        ("source_type", filters.source_types),
        ("emotion", filters.emotions),
        ("tone", filters.tones),
        ("topic", filters.topics),
        ("flag_reason", filters.flag_reasons),
    )
    for column, values in in_filters:
        if values:
            query = query.where(view.c[column].in_(values))

    if filters.intensity is not None:
        low, high = filters.intensity
        if low > FULL_INTENSITY_RANGE[0] or high < FULL_INTENSITY_RANGE[1]:
            query = query.where(view.c.intensity >= low, view.c.intensity <= high)

    if filters.alignment_score is not None:
        low, high = filters.alignment_score
        if low > FULL_ALIGNMENT_RANGE[0] or high < FULL_ALIGNMENT_RANGE[1]:
            query = query.where(view.c.alignment_score >= low, view.c.alignment_score <= high)

    if filters.include_corrected:
        query = query.where(view.c.annotation_updated_at.is_not(None))
        if latest_snapshot_at is not None:
            query = query.where(view.c.annotation_updated_at >= ensure_utc(latest_snapshot_at))

    if filters.high_risk_only:
        query = query.where(view.c.tone == "negative", view.c.intensity >= settings.HIGH_RISK_INTENSITY)

    if filters.flagged_only:
        query = query.where(view.c.flag_reason.is_not(None))

    if filters.start_date:
        query = query.where(view.c.tagged_at >= ensure_utc(filters.start_date))
    if filters.end_date:
        query = query.where(view.c.tagged_at <= ensure_utc(filters.end_date))
    if filters.score_cutoff is not None:
        query = query.where(view.c.score >= filters.score_cutoff)

    query = query.order_by(view.c.score.desc(), view.c.tagged_at.desc())
    if filters.top_n and not filters.supporting_therapists:
        query = query.limit(filters.top_n)
    return query


async def fetch_training_rows(filters: ExportFilterOptions, db=None) -> Tuple[List[TrainingRow], int]:
    """Rows matching `filters` and the total count before `top_n` is applied."""
    db = db or database_service

    latest_snapshot_at = await db.latest_snapshot_created_at()
    query = build_filtered_training_query(filters, latest_snapshot_at)

    if filters.supporting_therapists:
        wanted = set(filters.supporting_therapists)
        rows = [TrainingRow(**row) for row in await db.fetch_rows(query)]
        rows = [row for row in rows if wanted.issubset(row.shared_with)]
        total = len(rows)
        if filters.top_n:
            rows = rows[: filters.top_n]
    else:
        total = await db.count_rows(query)
        rows = [TrainingRow(**row) for row in await db.fetch_rows(query)]

    logger.debug("training_rows_fetched", returned=len(rows), total=total)
    return rows, total


async def current_data_version(db=None) -> str:
    """ISO timestamp of the newest tag or annotation change, "" when there is no data."""
    db = db or database_service

    changed_at = await db.latest_data_change()
    return ensure_utc(changed_at).isoformat() if changed_at else ""


# ==================================================
# Aggregation & Serialization
# ==================================================
def summarize_emotions(rows: Iterable[TrainingRow]) -> List[EmotionSummary]:
    """Per-emotion count and average score, most frequent first."""
    totals: Dict[str, List[float]] = {}
    for row in rows:
        if not row.emotion:
            continue
        totals.setdefault(row.emotion, []).append(row.score or 0.0)

    summary = [
        EmotionSummary(emotion=emotion, count=len(scores), avg_score=sum(scores) / len(scores))
        for emotion, scores in totals.items()
    ]
    summary.sort(key=lambda item: (-item.count, item.emotion))
    return summary


def _is_complete(row: TrainingRow) -> bool:
    return bool(row.content and row.emotion and row.tone and row.topic) and row.intensity is not None


def generate_jsonl(rows: Iterable[TrainingRow]) -> str:
    """Chat-format fine-tuning file, one JSON object per complete row."""
    lines = []
    for row in rows:
        if not _is_complete(row):
            continue
        answer = [
            f"emotion: {row.emotion}",
            f"tone: {row.tone}",
            f"intensity: {row.intensity:.2f}",
            f"topic: {row.topic}",
            f"message: {sanitize_training_text(row.content)}",
        ]
        if row.note:
            answer.append(f"note: {sanitize_training_text(row.note)}")
        answer.append(f"source: {'annotated' if row.annotation_updated_at else 'auto'}")

        example = {
            "messages": [
                {"role": "system", "content": TRAINING_SYSTEM_PROMPT},
                {"role": "user", "content": row.content.strip()},
                {"role": "assistant", "content": "\n".join(answer)},
            ]
        }
        lines.append(json.dumps(example, ensure_ascii=False))
    return "\n".join(lines)


def rows_to_csv(rows: Iterable[TrainingRow]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, extrasaction="ignore", lineterminator="\n")
    writer.writeheader()
    for row in rows:
        record = row.model_dump(mode="json")
        writer.writerow({column: "" if record.get(column) is None else record[column] for column in CSV_COLUMNS})
    return buffer.getvalue()
