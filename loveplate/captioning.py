import json
import logging
import re
from functools import lru_cache

import httpx

from loveplate.schema import BilingualDescription
from loveplate.utils import get_settings

log = logging.getLogger(__name__)

DESCRIPTION_PROMPT = """You are a warm and romantic food writer for "Love on the Plate" - a personal food diary celebrating homemade meals.

Analyze this food photo and provide:
1. The dish name in Chinese (Simplified) - be specific and concise (e.g., "红烧肉", "番茄炒蛋")
2. A brief, heartfelt description in English (2-3 sentences)
3. A brief, heartfelt description in Chinese (Simplified) (2-3 sentences)

Guidelines for descriptions:
- Focus on colors, textures, and what the dish appears to be
- Use warm, inviting language that evokes the love put into cooking
- Keep it concise but evocative
- Don't start with "This" or "这" - vary your sentence openings
- Avoid generic phrases like "looks delicious" or "看起来很好吃" - be specific

IMPORTANT: Return your response in this exact JSON format (no markdown, no code blocks):
{"dishName": "菜名", "en": "English description here", "cn": "Chinese description here"}"""

CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


class CaptioningError(Exception):
    """A failed captioning call, classified for the caller."""

    def __init__(self, code: str, user_message: str, retryable: bool = False):
        super().__init__(user_message)
        self.code = code
        self.user_message = user_message
        self.retryable = retryable

    def __repr__(self):
        return f"CaptioningError(code={self.code!r}, retryable={self.retryable})"


# (code, keywords, user message, retryable); first match wins
ERROR_RULES = [
    (
        "RATE_LIMIT",
        ("429", "rate limit", "quota", "resource exhausted", "resource_exhausted"),
        "AI service is temporarily busy. Please wait a moment and try again.",
        True,
    ),
    (
        "AUTH_ERROR",
        ("401", "403", "api key", "unauthorized", "permission_denied", "invalid_api_key"),
        "AI service authentication failed. Please contact support.",
        False,
    ),
    (
        "CONTENT_BLOCKED",
        ("blocked", "safety", "harm"),
        "Image could not be analyzed. Please try a different photo.",
        False,
    ),
    (
        "SERVICE_UNAVAILABLE",
        ("500", "502", "503", "unavailable", "overloaded"),
        "AI service is temporarily unavailable. Please try again later.",
        True,
    ),
    (
        "PAYLOAD_TOO_LARGE",
        ("413", "too large", "payload"),
        "Image is too large to process. Please try a smaller image.",
        False,
    ),
    (
        "TIMEOUT",
        ("timeout", "timed out", "deadline"),
        "AI service took too long to respond. Please try again.",
        True,
    ),
    (
        "NETWORK_ERROR",
        ("network", "connection", "econnrefused", "name resolution"),
        "Network connection issue. Please check your internet and try again.",
        True,
    ),
]


def classify_error(error: Exception) -> CaptioningError:
    """Map any failure from the captioning call onto a :class:`CaptioningError`."""
    if isinstance(error, CaptioningError):
        return error

    if isinstance(error, httpx.HTTPStatusError):
        text = f"{error.response.status_code} {error.response.text}".lower()
    elif isinstance(error, httpx.TimeoutException):
        text = f"timeout {error}".lower()
    elif isinstance(error, httpx.TransportError):
        text = f"network {error}".lower()
    else:
        text = str(error).lower()

    for code, keywords, message, retryable in ERROR_RULES:
        if any(keyword in text for keyword in keywords):
            return CaptioningError(code, message, retryable)

    return CaptioningError(
        "UNKNOWN_ERROR", "Failed to generate description. Please try again.", True
    )


def parse_description(text: str) -> BilingualDescription:
    """
    Parse the model's JSON answer, tolerating a markdown code fence.

    Anything that is not JSON becomes the English description.
    """
    text = text.strip()
    if text.startswith("```"):
        match = CODE_FENCE.search(text)
        if match:
            text = match.group(1).strip()

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return BilingualDescription(dish_name="", en=text, cn="")

    if not isinstance(parsed, dict):
        return BilingualDescription(dish_name="", en=text, cn="")

    return BilingualDescription(
        dish_name=str(parsed.get("dishName") or ""),
        en=str(parsed.get("en") or ""),
        cn=str(parsed.get("cn") or ""),
    )


def _response_text(body: dict) -> str:
    feedback = body.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise CaptioningError(
            "CONTENT_BLOCKED",
            "Image could not be analyzed. Please try a different photo.",
        )

    candidates = body.get("candidates") or []
    if not candidates:
        return ""
    candidate = candidates[0]
    if candidate.get("finishReason") == "SAFETY":
        raise CaptioningError(
            "CONTENT_BLOCKED",
            "Image could not be analyzed. Please try a different photo.",
        )
    parts = (candidate.get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts)


class GeminiCaptioner:
    """Generates bilingual dish names and descriptions with the Gemini REST API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def describe(self, image_base64: str, mime_type: str = "image/jpeg") -> BilingualDescription:
        if not image_base64:
            raise CaptioningError("INVALID_INPUT", "No image data provided.")

        payload = {
            "contents": [
                {
                    "parts": [
                        {"text": DESCRIPTION_PROMPT},
                        {"inline_data": {"mime_type": mime_type, "data": image_base64}},
                    ]
                }
            ]
        }

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                headers={"x-goog-api-key": self._api_key},
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    f"/models/{self._model}:generateContent", json=payload
                )
                response.raise_for_status()
                text = _response_text(response.json()).strip()
        except (httpx.HTTPError, CaptioningError, ValueError) as e:
            error = classify_error(e)
            log.warning(f"Captioning failed ({error.code}): {e}")
            raise error from e

        if not text:
            raise CaptioningError(
                "EMPTY_RESPONSE", "AI returned an empty response. Please try again.", True
            )

        description = parse_description(text)
        log.debug(f"Generated caption for dish '{description.dish_name}'")
        return description


@lru_cache
def get_captioner() -> GeminiCaptioner:
    settings = get_settings()
    return GeminiCaptioner(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        base_url=settings.gemini_base_url,
        timeout=settings.gemini_timeout,
    )
