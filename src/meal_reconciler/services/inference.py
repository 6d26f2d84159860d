"""Inference calls with strict output parsing and a placeholder fallback."""

import base64
import logging
from dataclasses import dataclass, field
from typing import Protocol

from pydantic import ValidationError

from meal_reconciler.domain.errors import InferenceUnavailable, ModelOutputMalformed
from meal_reconciler.domain.inference import (
    DetectedItem,
    InferenceRequest,
    InferenceResponse,
)
from meal_reconciler.domain.notes import UserNote
from meal_reconciler.services.resilience import RetryPolicy

_logger = logging.getLogger(__name__)

_NULLABLE_STRING = {"anyOf": [{"type": "string"}, {"type": "null"}]}

INFERENCE_SCHEMA: dict[str, object] = {
    "type": "object",
    "properties": {
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "portion_grams": {"type": "number", "minimum": 0},
                    "unit": _NULLABLE_STRING,
                    "calories": {"type": "number", "minimum": 0},
                    "macros": {
                        "type": "object",
                        "properties": {
                            "protein_g": {"type": "number", "minimum": 0},
                            "carbs_g": {"type": "number", "minimum": 0},
                            "fat_g": {"type": "number", "minimum": 0},
                        },
                        "required": ["protein_g", "carbs_g", "fat_g"],
                        "additionalProperties": False,
                    },
                    "confidence": {"type": "number", "minimum": 0.0, "maximum": 1.0},
                    "note_influence": {
                        "anyOf": [
                            {
                                "type": "string",
                                "enum": ["none", "name", "portion", "both"],
                            },
                            {"type": "null"},
                        ]
                    },
                    "alternatives": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "name": {"type": "string"},
                                "confidence": {
                                    "type": "number",
                                    "minimum": 0.0,
                                    "maximum": 1.0,
                                },
                            },
                            "required": ["name", "confidence"],
                            "additionalProperties": False,
                        },
                    },
                },
                "required": [
                    "name",
                    "portion_grams",
                    "unit",
                    "calories",
                    "macros",
                    "confidence",
                    "note_influence",
                    "alternatives",
                ],
                "additionalProperties": False,
            },
        },
        "total_calories": {"type": "number", "minimum": 0},
        "explanation": {"type": "string"},
        "model_version": {"type": "string"},
    },
    "required": ["items", "total_calories", "explanation", "model_version"],
    "additionalProperties": False,
}

SYSTEM_PROMPT = (
    "You are a nutrition analysis assistant specialized in Indian and global "
    "cuisines. Identify each food item in the photo or description and estimate "
    "its portion and nutrition.\n"
    "Guidelines:\n"
    "1. Use common regional dish names (e.g. 'chole bhature', not 'chickpea "
    "curry with fried bread').\n"
    "2. Default to typical serving sizes unless the user says otherwise "
    "(1 roti is about 30 g, 1 katori of dal about 150 g).\n"
    "3. List each item on the plate separately; include cooking method when it "
    "changes calories (fried, grilled, tadka).\n"
    "4. Confidence is 0-1: 0.9+ clear standard dish, 0.7-0.89 partial view, "
    "0.5-0.69 unclear, below 0.5 needs human verification.\n"
    "5. Estimate drinks in ml and account for visible oil, ghee and nuts.\n"
    "6. Report portion_grams in grams with unit 'g' unless a count is clearer.\n"
    "7. If the user note changed a name or portion, set note_influence."
)

PLACEHOLDER_ITEM = DetectedItem(
    name="Unknown Food",
    portion=100.0,
    unit="g",
    calories=200.0,
    protein_g=5.0,
    carbs_g=30.0,
    fat_g=5.0,
    confidence=0.2,
)
MALFORMED_WARNING = (
    "We couldn't read the analysis result. A placeholder item was added; "
    "please edit it before saving."
)


class InferenceClient(Protocol):
    """Interface for the model call that turns a photo or text into items."""

    async def infer(  # noqa: PLR0913
        self,
        *,
        model: str,
        reasoning_effort: str | None,
        store: bool,
        prompt: str,
        schema: dict[str, object],
        image_url: str | None,
        text: str | None,
    ) -> dict[str, object]:
        """Return the raw structured output of one inference call."""


@dataclass(frozen=True)
class ParsedOutput:
    response: InferenceResponse
    items: tuple[DetectedItem, ...]


@dataclass(frozen=True)
class ParseError:
    message: str


def parse_inference_output(raw: object) -> ParsedOutput | ParseError:
    """Validate raw model output against the response contract."""
    if not isinstance(raw, dict):
        return ParseError(f"Expected a JSON object, got {type(raw).__name__}")
    try:
        response = InferenceResponse.model_validate(raw)
    except ValidationError as exc:
        return ParseError(f"Invalid inference output: {exc.error_count()} errors")
    items = tuple(DetectedItem.from_inference(item) for item in response.items)
    return ParsedOutput(response=response, items=items)


@dataclass(frozen=True)
class InferenceOutcome:
    """What the pipeline continues with after the model call."""

    items: tuple[DetectedItem, ...]
    raw: dict[str, object]
    explanation: str = ""
    model_version: str | None = None
    is_placeholder: bool = False
    warnings: tuple[str, ...] = field(default_factory=tuple)


def build_prompt(request: InferenceRequest, note: UserNote | None) -> str:
    """Compose the system guidance with the request context."""
    lines = [SYSTEM_PROMPT, ""]
    if request.meal_type:
        lines.append(f"Meal type: {request.meal_type}")
    if request.region:
        lines.append(f"Regional focus: {request.region} cuisine")
    if request.dietary_prefs:
        lines.append(f"Dietary preferences: {', '.join(request.dietary_prefs)}")
    if note is not None and not note.is_empty:
        lines.append(f"User note: {note.sanitized_text}")
    if request.text:
        lines.append(f"Meal description: {request.text}")
    else:
        lines.append("Analyze the food in the image.")
    return "\n".join(lines)


@dataclass
class InferenceService:
    """Runs the model call under the retry policy and validates its output."""

    client: InferenceClient
    model: str
    reasoning_effort: str | None
    store: bool
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    malformed_retries: int = 1

    async def infer(
        self, request: InferenceRequest, note: UserNote | None = None
    ) -> InferenceOutcome:
        """Return validated items, or a placeholder after repeated bad output.

        Raises InferenceUnavailable when the call itself cannot complete.
        """
        prompt = build_prompt(request, note)
        image_url = _image_input(request)
        malformed = 0
        while True:
            parsed = await self._call(prompt, image_url, request.text)
            if isinstance(parsed, ParsedOutput):
                return InferenceOutcome(
                    items=parsed.items,
                    raw=parsed.response.model_dump(),
                    explanation=parsed.response.explanation,
                    model_version=parsed.response.model_version,
                )
            malformed += 1
            _logger.warning(
                "Malformed inference output (attempt %s/%s): %s",
                malformed,
                self.malformed_retries + 1,
                parsed.message,
            )
            if malformed > self.malformed_retries:
                return InferenceOutcome(
                    items=(PLACEHOLDER_ITEM,),
                    raw={"error": parsed.message},
                    is_placeholder=True,
                    warnings=(MALFORMED_WARNING,),
                )

    async def _call(
        self, prompt: str, image_url: str | None, text: str | None
    ) -> ParsedOutput | ParseError:
        try:
            raw = await self.retry_policy.run(
                lambda: self.client.infer(
                    model=self.model,
                    reasoning_effort=self.reasoning_effort,
                    store=self.store,
                    prompt=prompt,
                    schema=INFERENCE_SCHEMA,
                    image_url=image_url,
                    text=text,
                ),
                action="vision" if image_url else "text",
            )
        except ModelOutputMalformed as exc:
            return ParseError(str(exc))
        except Exception as exc:
            raise InferenceUnavailable("Inference service is unavailable") from exc
        return parse_inference_output(raw)


def _image_input(request: InferenceRequest) -> str | None:
    if request.image_bytes is not None:
        return to_data_url(request.image_bytes)
    return request.image_url


def to_data_url(image_bytes: bytes) -> str:
    """Convert bytes to a base64 data URL for image input."""
    mime_type = detect_mime_type(image_bytes)
    encoded = base64.b64encode(image_bytes).decode("utf-8")
    return f"data:{mime_type};base64,{encoded}"


def detect_mime_type(image_bytes: bytes) -> str:
    """Infer a basic image MIME type from file signatures."""
    if image_bytes.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if image_bytes.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"
