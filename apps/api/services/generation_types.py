"""Generation type registry: canonical keys, URL aliases and param schemas."""

from __future__ import annotations

from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from services.errors import ValidationError


IMAGE_TYPES = ("image_generation", "photosession")
DOCUMENT_URL_TYPES = ("presentation",)


class GenerationParams(BaseModel):
    """Base for per-type params. Unknown keys are kept and passed to the provider."""

    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)

    customPrompt: Optional[str] = Field(default=None, max_length=5000)


class WorksheetParams(GenerationParams):
    subject: Optional[str] = None
    topic: Optional[str] = None
    level: Optional[str] = None
    questionsCount: Optional[int] = Field(default=None, ge=1, le=100)
    preferences: Optional[str] = None


class QuizParams(GenerationParams):
    subject: Optional[str] = None
    topic: Optional[str] = None
    level: Optional[str] = None
    questionsCount: Optional[int] = Field(default=None, ge=1, le=100)
    answersCount: Optional[int] = Field(default=None, ge=2, le=8)


class VocabularyParams(GenerationParams):
    topic: str = Field(min_length=1)
    subject: Optional[str] = None
    language: Optional[str] = None
    wordsCount: Optional[int] = Field(default=None, ge=1, le=200)
    level: Optional[str] = None


class LessonPlanParams(GenerationParams):
    subject: Optional[str] = None
    topic: Optional[str] = None
    level: Optional[str] = None
    duration: Optional[int] = Field(default=None, ge=5, le=240)
    objectives: Optional[str] = None


class ContentAdaptationParams(GenerationParams):
    text: str = Field(min_length=1)
    action: Optional[str] = None
    level: Optional[str] = None


class MessageParams(GenerationParams):
    formData: Optional[Dict[str, Any]] = None


class FeedbackParams(GenerationParams):
    studentWork: str = Field(min_length=1)
    taskType: Optional[str] = None
    criteria: Optional[str] = None
    level: Optional[str] = None


class ImageGenerationParams(GenerationParams):
    prompt: str = Field(min_length=1)
    style: str = "realistic"
    size: Optional[str] = None


class PhotosessionParams(GenerationParams):
    prompt: str = Field(min_length=1)
    style: Optional[str] = None
    photoUrl: Optional[str] = None
    photoHash: Optional[str] = None

    @model_validator(mode="after")
    def _require_photo(self):
        if not self.photoUrl and not self.photoHash:
            raise ValueError("photoUrl or photoHash is required")
        return self


class PresentationParams(GenerationParams):
    inputText: str = Field(min_length=1)
    themeName: Optional[str] = None
    numCards: Optional[int] = Field(default=None, ge=1, le=60)


class TranscriptionParams(GenerationParams):
    videoUrl: Optional[str] = None
    videoHash: Optional[str] = None
    language: Optional[str] = None

    @model_validator(mode="after")
    def _require_video(self):
        if not self.videoUrl and not self.videoHash:
            raise ValueError("videoUrl or videoHash is required")
        return self


class TextGenerationParams(GenerationParams):
    prompt: str = Field(min_length=1)
    maxLength: Optional[int] = Field(default=None, ge=1)


PARAM_SCHEMAS: Dict[str, Type[GenerationParams]] = {
    "worksheet": WorksheetParams,
    "quiz": QuizParams,
    "vocabulary": VocabularyParams,
    "lesson_plan": LessonPlanParams,
    "feedback": FeedbackParams,
    "content_adaptation": ContentAdaptationParams,
    "message": MessageParams,
    "image_generation": ImageGenerationParams,
    "photosession": PhotosessionParams,
    "presentation": PresentationParams,
    "transcription": TranscriptionParams,
    "text_generation": TextGenerationParams,
}

TYPE_ALIASES: Dict[str, str] = {
    "lesson-plan": "lesson_plan",
    "content-adaptation": "content_adaptation",
    "image": "image_generation",
    "transcribe-video": "transcription",
    "text": "text_generation",
}


def resolve_generation_type(raw_type: str) -> str:
    key = str(raw_type or "").strip().lower()
    key = TYPE_ALIASES.get(key, key)
    if key not in PARAM_SCHEMAS:
        raise ValidationError(f"Unknown generation type: {raw_type}")
    return key


def validate_params(generation_type: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate params for a canonical type and return the normalized payload."""
    schema = PARAM_SCHEMAS.get(generation_type)
    if schema is None:
        raise ValidationError(f"Unknown generation type: {generation_type}")
    if params is not None and not isinstance(params, dict):
        raise ValidationError("Generation params must be a JSON object")

    try:
        model = schema.model_validate(params or {})
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or "params"
        raise ValidationError(
            f"Invalid {generation_type} params: {field}: {first.get('msg', 'invalid value')}",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc
    return model.model_dump(exclude_none=True)
