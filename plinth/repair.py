"""Schema validation and the single-retry repair loop for model output.

Every generated artifact kind goes through :func:`generate_validated`:

1. call the model and parse its text against a strict pydantic model;
2. on failure, send one repair request (raw text, schema shape and the
   summarized validation errors) at a lower temperature;
3. if the repaired text still fails, return a typed :class:`StageFailure`.

There is never a second repair attempt.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from plinth.config import get_settings
from plinth.llm import LLMClient

log = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

MAX_ERROR_SUMMARY_LENGTH = 500

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.IGNORECASE | re.DOTALL)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


@dataclass
class ParseResult(Generic[T]):
    ok: bool
    data: T | None = None
    error: str | None = None


def extract_json_text(text: str) -> str | None:
    """Pull the JSON payload out of fences or surrounding prose."""
    m = _FENCE_RE.search(text or "")
    if m and m.group(1).strip():
        return m.group(1).strip()
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if not starts:
        return None
    start = min(starts)
    closer = "}" if text[start] == "{" else "]"
    end = text.rfind(closer)
    if end <= start:
        return None
    return text[start:end + 1]


def format_validation_issues(exc: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or '(root)'}: {err['msg']}"
        for err in exc.errors()
    ]


def safe_parse_llm_json(text: str, model: type[T]) -> ParseResult[T]:
    extracted = extract_json_text(text or "")
    if extracted is None:
        return ParseResult(
            ok=False,
            error="Could not find any JSON object in the model output",
        )
    try:
        payload = json.loads(extracted)
    except json.JSONDecodeError as exc:
        return ParseResult(
            ok=False,
            error=f"Model output is not valid JSON: {exc.msg} (line {exc.lineno}, column {exc.colno})",
        )
    try:
        data = model.model_validate(payload)
    except ValidationError as exc:
        issues = format_validation_issues(exc)
        return ParseResult(
            ok=False,
            error="Model output did not match the expected format: " + "; ".join(issues),
        )
    return ParseResult(ok=True, data=data)


def summarize_validation_error(error: str | ValidationError | None) -> str:
    """Flatten a validation error into at most 500 characters."""
    if isinstance(error, ValidationError):
        text = "; ".join(format_validation_issues(error))
    else:
        text = str(error or "Unknown validation error")
    if len(text) > MAX_ERROR_SUMMARY_LENGTH:
        return text[:MAX_ERROR_SUMMARY_LENGTH - 3] + "..."
    return text


# ---------------------------------------------------------------------------
# Repair prompt
# ---------------------------------------------------------------------------

REPAIR_SYSTEM_PROMPT = """\
You repair JSON produced by another model so that it matches a required schema.

Return ONLY the corrected JSON object. Do not add commentary, markdown, or code \
fences. Keep every value that is already valid; fix only what the validation \
errors describe. Do not invent facts that are not present in the original text.
"""


def build_repair_messages(
    *, raw_text: str, schema_name: str, schema_shape_text: str, validation_errors: str,
) -> list[dict[str, str]]:
    user = "\n".join([
        f"SCHEMA NAME: {schema_name}",
        "",
        "REQUIRED SHAPE:",
        schema_shape_text,
        "",
        "VALIDATION ERRORS:",
        summarize_validation_error(validation_errors),
        "",
        "ORIGINAL OUTPUT:",
        raw_text,
    ])
    return [
        {"role": "system", "content": REPAIR_SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


# ---------------------------------------------------------------------------
# Generate + validate + single repair
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageSpec(Generic[T]):
    """Everything the repair loop needs to know about one artifact kind."""
    phase: str            # progress phase prefix, e.g. "jobs"
    failure_code: str     # e.g. "JTBD_VALIDATION_FAILED"
    model: type[T]
    schema_name: str
    schema_shape: dict[str, Any]
    label: str = ""        # human-readable, e.g. "scoring matrix"

    @property
    def schema_shape_text(self) -> str:
        return json.dumps(self.schema_shape, indent=2)


@dataclass
class StageSuccess(Generic[T]):
    data: T
    repairs: int


@dataclass
class StageFailure:
    code: str
    message: str
    details: dict[str, Any]
    repairs: int


async def generate_validated(
    stage: StageSpec[T],
    client: LLMClient,
    messages: list[dict[str, str]],
    on_repair: Callable[[], None] | None = None,
) -> StageSuccess[T] | StageFailure:
    settings = get_settings()
    response = await client.call_llm(
        messages, json_mode=True,
        temperature=settings.llm_temperature, max_tokens=settings.llm_max_tokens,
    )
    parsed = safe_parse_llm_json(response.text, stage.model)
    if parsed.ok and parsed.data is not None:
        return StageSuccess(data=parsed.data, repairs=0)

    log.warning("%s output failed validation, attempting one repair: %s",
                stage.schema_name, summarize_validation_error(parsed.error))
    if on_repair is not None:
        on_repair()
    repair_messages = build_repair_messages(
        raw_text=response.text,
        schema_name=stage.schema_name,
        schema_shape_text=stage.schema_shape_text,
        validation_errors=parsed.error or "",
    )
    repaired = await client.call_llm(
        repair_messages, json_mode=True,
        temperature=settings.llm_repair_temperature, max_tokens=settings.llm_max_tokens,
    )
    reparsed = safe_parse_llm_json(repaired.text, stage.model)
    if reparsed.ok and reparsed.data is not None:
        return StageSuccess(data=reparsed.data, repairs=1)

    summary = summarize_validation_error(reparsed.error)
    log.warning("%s output still invalid after repair: %s", stage.schema_name, summary)
    return StageFailure(
        code=stage.failure_code,
        message=f"Failed to validate {stage.label or stage.schema_name} output.",
        details={"validationError": summary},
        repairs=1,
    )
