"""Normalize and reject raw producer payloads before they reach aggregation."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Iterable, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    TypeAdapter,
    ValidationInfo,
    field_validator,
)
from pydantic import ValidationError as PydanticValidationError

from .errors import FieldViolation, ValidationError
from .models import (
    AIRequestEvent,
    EngagementEvent,
    Event,
    EventKind,
    PerformanceEvent,
    SalesEvent,
    ensure_utc,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CLOCK_SKEW = timedelta(minutes=5)

# String fields are opaque data: bounded in length and never interpreted.
Text = Annotated[str, Field(min_length=1, max_length=256, strict=True)]
NonNegativeFloat = Annotated[float, Field(ge=0, strict=True, allow_inf_nan=False)]
NonNegativeInt = Annotated[int, Field(ge=0, strict=True)]


def _alias(*names: str) -> Any:
    return AliasChoices(*names)


class _EventSchema(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    occurred_at: Optional[datetime] = Field(
        default=None, validation_alias=_alias("occurredAt", "occurred_at", "timestamp")
    )

    @field_validator("occurred_at")
    @classmethod
    def _not_in_future(cls, value: Optional[datetime], info: ValidationInfo) -> Optional[datetime]:
        if value is None or not info.context:
            return value
        limit = info.context["now"] + info.context["max_clock_skew"]
        if ensure_utc(value) > limit:
            skew = int(info.context["max_clock_skew"].total_seconds())
            raise ValueError(f"timestamp is more than {skew}s in the future")
        return value


class AIRequestSchema(_EventSchema):
    type: Literal["ai_request"]
    user_id: Text = Field(validation_alias=_alias("userId", "user_id"))
    service: Text
    endpoint: Optional[Text] = None
    duration_ms: NonNegativeFloat = Field(validation_alias=_alias("durationMs", "duration_ms", "duration"))
    tokens: NonNegativeInt = 0
    cost: NonNegativeFloat = 0.0
    success: StrictBool = True


class EngagementSchema(_EventSchema):
    type: Literal["engagement"]
    user_id: Text = Field(validation_alias=_alias("userId", "user_id"))
    session_id: Optional[Text] = Field(default=None, validation_alias=_alias("sessionId", "session_id"))
    event_type: Literal[
        "page_view", "click", "scroll", "form_submit", "feature_use", "session_start", "session_end"
    ] = Field(validation_alias=_alias("eventType", "event_type"))
    page: Optional[Text] = None
    duration_ms: NonNegativeFloat = Field(
        default=0.0, validation_alias=_alias("durationMs", "duration_ms", "duration")
    )


class SalesSchema(_EventSchema):
    type: Literal["sales"]
    user_id: Text = Field(validation_alias=_alias("userId", "user_id"))
    amount: NonNegativeFloat
    currency: Annotated[str, Field(pattern=r"^[A-Z]{3}$", strict=True)] = "USD"
    status: Literal["completed", "pending", "failed", "refunded"] = "completed"
    plan: Optional[Text] = None


class PerformanceSchema(_EventSchema):
    type: Literal["performance"]
    endpoint: Text
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
    response_time_ms: NonNegativeFloat = Field(
        validation_alias=_alias("responseTimeMs", "response_time_ms", "responseTime")
    )
    status_code: Annotated[int, Field(ge=100, le=599, strict=True)] = Field(
        validation_alias=_alias("statusCode", "status_code")
    )
    user_id: Optional[Text] = Field(default=None, validation_alias=_alias("userId", "user_id"))


RawEvent = Annotated[
    Union[AIRequestSchema, EngagementSchema, SalesSchema, PerformanceSchema],
    Field(discriminator="type"),
]
_RAW_EVENT_ADAPTER = TypeAdapter(RawEvent)

_TAGS = {kind.value for kind in EventKind}


@dataclass(frozen=True)
class BatchValidation:
    """Outcome of validating a batch: each payload succeeds or fails on its own."""

    accepted: List[Tuple[int, Event]] = field(default_factory=list)
    rejected: List[Tuple[int, ValidationError]] = field(default_factory=list)


def validate(
    raw: Any,
    now: Optional[datetime] = None,
    max_clock_skew: timedelta = DEFAULT_MAX_CLOCK_SKEW,
) -> Event:
    """
    Turn a raw payload into an immutable, fully typed event.

    A payload without a timestamp is stamped with ``now``.

    Raises:
        ValidationError: listing every violated field.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError.single("body", "expected a JSON object")

    now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
    try:
        schema = _RAW_EVENT_ADAPTER.validate_python(
            dict(raw), context={"now": now, "max_clock_skew": max_clock_skew}
        )
    except PydanticValidationError as exc:
        raise ValidationError(_violations_from(exc)) from None

    occurred_at = ensure_utc(schema.occurred_at) if schema.occurred_at is not None else now
    return _to_event(schema, occurred_at)


def validate_batch(
    raws: Iterable[Any],
    now: Optional[datetime] = None,
    max_clock_skew: timedelta = DEFAULT_MAX_CLOCK_SKEW,
) -> BatchValidation:
    """Validate payloads independently; one bad payload never rejects the others."""
    result = BatchValidation()
    for index, raw in enumerate(raws):
        try:
            result.accepted.append((index, validate(raw, now=now, max_clock_skew=max_clock_skew)))
        except ValidationError as exc:
            logger.warning("Rejected event %d: invalid fields %s", index, ", ".join(exc.fields))
            result.rejected.append((index, exc))
    return result


def _to_event(schema: BaseModel, occurred_at: datetime) -> Event:
    if isinstance(schema, AIRequestSchema):
        return AIRequestEvent(
            user_id=schema.user_id,
            service=schema.service,
            endpoint=schema.endpoint,
            duration_ms=float(schema.duration_ms),
            tokens=schema.tokens,
            cost=float(schema.cost),
            success=schema.success,
            occurred_at=occurred_at,
        )
    if isinstance(schema, EngagementSchema):
        return EngagementEvent(
            user_id=schema.user_id,
            session_id=schema.session_id,
            event_type=schema.event_type,
            page=schema.page,
            duration_ms=float(schema.duration_ms),
            occurred_at=occurred_at,
        )
    if isinstance(schema, SalesSchema):
        return SalesEvent(
            user_id=schema.user_id,
            amount=float(schema.amount),
            currency=schema.currency,
            status=schema.status,
            plan=schema.plan,
            occurred_at=occurred_at,
        )
    if isinstance(schema, PerformanceSchema):
        return PerformanceEvent(
            endpoint=schema.endpoint,
            method=schema.method,
            response_time_ms=float(schema.response_time_ms),
            status_code=schema.status_code,
            user_id=schema.user_id,
            occurred_at=occurred_at,
        )
    raise TypeError(f"unhandled event schema {type(schema).__name__}")


def _violations_from(exc: PydanticValidationError) -> List[FieldViolation]:
    violations = []
    seen = set()
    for error in exc.errors(include_url=False, include_input=False):
        name = _field_name(error)
        if name in seen:
            continue
        seen.add(name)
        violations.append(FieldViolation(name, error["msg"]))
    return violations


def _field_name(error: Mapping[str, Any]) -> str:
    if error.get("type") in ("union_tag_not_found", "union_tag_invalid"):
        return "type"
    loc = [str(part) for part in error.get("loc", ())]
    if loc and loc[0] in _TAGS:
        loc = loc[1:]
    return ".".join(loc) or "body"
