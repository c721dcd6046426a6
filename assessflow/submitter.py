from __future__ import annotations

import logging
from typing import Any

from jsonschema import Draft202012Validator

from assessflow.errors import ApiError, ErrorCode
from assessflow.settings import DEFAULT_QUEUE_NAME

logger = logging.getLogger(__name__)

DEFAULT_ASSESSMENT_NAME = "AI-Driven Talent Mapping"
ASSESSMENT_NAMES = ("AI-Driven Talent Mapping", "AI-Based IQ Test", "Custom Assessment")
MAX_IDEMPOTENCY_KEY_LENGTH = 255

RIASEC_TRAITS = ("realistic", "investigative", "artistic", "social", "enterprising", "conventional")
OCEAN_TRAITS = ("openness", "conscientiousness", "extraversion", "agreeableness", "neuroticism")
VIA_IS_STRENGTHS = (
    "creativity",
    "curiosity",
    "judgment",
    "loveOfLearning",
    "perspective",
    "bravery",
    "perseverance",
    "honesty",
    "zest",
    "love",
    "kindness",
    "socialIntelligence",
    "teamwork",
    "fairness",
    "leadership",
    "forgiveness",
    "humility",
    "prudence",
    "selfRegulation",
    "appreciationOfBeauty",
    "gratitude",
    "hope",
    "humor",
    "spirituality",
)


def _score_block(traits: tuple[str, ...]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {name: {"type": "integer", "minimum": 0, "maximum": 100} for name in traits},
        "required": list(traits),
        "additionalProperties": False,
    }


ASSESSMENT_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "assessmentName": {"type": "string", "enum": list(ASSESSMENT_NAMES)},
        "riasec": _score_block(RIASEC_TRAITS),
        "ocean": _score_block(OCEAN_TRAITS),
        "viaIs": _score_block(VIA_IS_STRENGTHS),
        "rawResponses": {"type": "object"},
    },
    "required": ["riasec", "ocean", "viaIs"],
    "additionalProperties": False,
}

_VALIDATOR = Draft202012Validator(ASSESSMENT_SCHEMA)


def validate_assessment_payload(payload: Any) -> dict[str, Any]:
    """Validate a submitted assessment and fill in the default assessment name.

    Raises ApiError(VALIDATION) listing every violation found, not just the first.
    """
    if not isinstance(payload, dict):
        raise ApiError(
            code=ErrorCode.VALIDATION.value,
            message="assessment payload must be an object",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    errors = sorted(_VALIDATOR.iter_errors(payload), key=lambda e: list(e.absolute_path))
    if errors:
        details = []
        for err in errors[:10]:
            path = ".".join(str(p) for p in err.absolute_path) or "<root>"
            details.append(f"{path}: {err.message}")
        raise ApiError(
            code=ErrorCode.VALIDATION.value,
            message="; ".join(details),
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    normalized = dict(payload)
    normalized.setdefault("assessmentName", DEFAULT_ASSESSMENT_NAME)
    return normalized


class JobSubmitter:
    def __init__(self, *, store: Any, queue_backend: Any, queue_name: str = DEFAULT_QUEUE_NAME) -> None:
        self.store = store
        self.queue_backend = queue_backend
        self.queue_name = queue_name

    def publish(self, job: dict[str, Any]) -> Any:
        return self.queue_backend.enqueue(
            queue_name=self.queue_name,
            payload={
                "job_id": job["job_id"],
                "user_id": job["user_id"],
                "payload": job["payload"],
                "enqueued_at": self.store.utcnow_iso(),
            },
        )

    def submit(self, *, user_id: str, idempotency_key: str | None, payload: Any) -> dict[str, Any]:
        key = (idempotency_key or "").strip()
        if not key:
            raise ApiError(
                code="IDEMPOTENCY_MISSING",
                message="Idempotency-Key header is required",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ApiError(
                code=ErrorCode.VALIDATION.value,
                message=f"idempotency key longer than {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        normalized = validate_assessment_payload(payload)

        job, created = self.store.create_job(user_id=user_id, idempotency_key=key, payload=normalized)
        if not created:
            logger.info("submission_deduplicated user_id=%s job_id=%s", user_id, job["job_id"])
            return {
                "job_id": job["job_id"],
                "status": job["status"],
                "duplicate": True,
                "created_at": job["created_at"],
            }

        try:
            self.publish(job)
        except Exception:
            # The job row is committed; orphan cleanup picks up queued rows without a message.
            logger.exception("job_publish_failed job_id=%s queue=%s", job["job_id"], self.queue_name)
        else:
            logger.info("job_submitted user_id=%s job_id=%s", user_id, job["job_id"])
        return {
            "job_id": job["job_id"],
            "status": job["status"],
            "duplicate": False,
            "created_at": job["created_at"],
        }
