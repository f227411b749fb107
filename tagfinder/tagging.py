"""Vision tagging collaborator.

The worker only depends on :class:`Tagger`. The model's raw text is parsed
once, here, into a :class:`TaggingResult`; nothing untyped gets past this
module. Tag names are passed through as the model wrote them (trimmed) since
the worker re-tokenizes them itself.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import aiohttp
from pydantic import BaseModel, ValidationError, field_validator

from tagfinder.errors import TaggingError
from tagfinder.settings import settings

logger = logging.getLogger(__name__)

TAGGING_INSTRUCTION = (
    "Describe this image for a tag search index. Respond with a single JSON object and "
    "nothing else, shaped as "
    '{"caption": "<one sentence>", "tags": [{"name": "<word>", "confidence": <0..1>, '
    '"kind": "<emotion|object|action|event|person|color|setting|style>"}]}. '
    "Prefer short lowercase single-word tags; use hyphens for compounds."
)


class ModelTag(BaseModel):
    """A tag suggested by the model."""
    name: str
    confidence: float
    kind: Optional[str] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("tag name is empty")
        return value

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, value: float) -> float:
        if value != value:  # NaN
            raise ValueError("confidence is NaN")
        return max(0.0, min(1.0, value))


class TaggingResult(BaseModel):
    """Parsed model output: a caption and tag suggestions."""
    caption: str
    tags: List[ModelTag]


class _RawTaggingPayload(BaseModel):
    caption: str
    tags: List[Any]


def parse_tagging_output(text: str) -> TaggingResult:
    """
    Parse the model's text output.

    The payload must be a JSON object with a string ``caption`` and an array
    ``tags``; anything else raises TaggingError. Individual malformed tag
    items are skipped rather than failing the whole result.
    """
    try:
        payload = _RawTaggingPayload.model_validate_json(text)
    except ValidationError as e:
        raise TaggingError(f"Model did not return the expected JSON object: {text[:500]!r}") from e

    tags = []
    for item in payload.tags:
        try:
            tags.append(ModelTag.model_validate(item))
        except ValidationError:
            logger.debug("Skipping malformed tag item %r", item)
    return TaggingResult(caption=payload.caption.strip(), tags=tags)


class Tagger(ABC):
    """Interface of the vision tagging collaborator."""

    @property
    def configured(self) -> bool:
        """False when credentials are missing; the worker idles instead of failing jobs."""
        return True

    @abstractmethod
    async def tag_image(self, image_url: str) -> TaggingResult:
        """Return caption and tags for the image at ``image_url``."""


def extract_output_text(response: Any) -> str:
    """Pull the first assistant ``output_text`` out of a Responses API payload."""
    if not isinstance(response, dict):
        raise TaggingError("Vision response was not a JSON object")
    output = response.get("output")
    if not isinstance(output, list):
        raise TaggingError("Vision response missing output array")

    for item in output:
        if not isinstance(item, dict) or item.get("type") != "message" or item.get("role") != "assistant":
            continue
        for part in item.get("content") or []:
            if isinstance(part, dict) and part.get("type") == "output_text" and isinstance(part.get("text"), str):
                return part["text"]
    raise TaggingError("Vision response contained no assistant output_text")


class OpenAIVisionTagger(Tagger):
    """Tagger backed by the OpenAI Responses API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_VISION_MODEL
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.OPENAI_VISION_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _request_body(self, image_url: str) -> dict:
        return {
            "model": self.model,
            "input": [
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": TAGGING_INSTRUCTION},
                        {"type": "input_image", "image_url": image_url},
                    ],
                }
            ],
            "temperature": 0,
            "max_output_tokens": settings.OPENAI_MAX_OUTPUT_TOKENS,
            "text": {"format": {"type": "text"}},
        }

    async def tag_image(self, image_url: str) -> TaggingResult:
        if not self.configured:
            raise TaggingError("OPENAI_API_KEY is not set")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    f"{self.base_url}/responses", json=self._request_body(image_url), headers=headers
                ) as response:
                    if response.status >= 400:
                        error_text = await response.text()
                        raise TaggingError(
                            f"Vision API error: {response.status} {response.reason} - {error_text[:500]}"
                        )
                    payload = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise TaggingError(f"Vision API call timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise TaggingError(f"Vision API request failed: {e}") from e
        except ValueError as e:
            raise TaggingError("Vision API returned a non-JSON body") from e

        return parse_tagging_output(extract_output_text(payload))
