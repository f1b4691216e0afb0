"""Thin wrapper around an OpenAI-compatible vision chat-completion API."""

from __future__ import annotations

import base64
import logging

from openai import OpenAI as _HTTPClient

from docparse.config import settings

logger = logging.getLogger(__name__)

_client: _HTTPClient | None = None


def _get_client() -> _HTTPClient:
    global _client
    if _client is None:
        _client = _HTTPClient(
            base_url=settings.vision_base_url,
            api_key=settings.vision_api_key or "unused",
            max_retries=0,  # retries are handled by the OCR facade
        )
    return _client


def detect_image_mime(image_bytes: bytes) -> str:
    """MIME type from the file signature (PNG when unknown)."""
    if image_bytes[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if image_bytes[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    if image_bytes[:2] == b"BM":
        return "image/bmp"
    if image_bytes[:4] in (b"II*\x00", b"MM\x00*"):
        return "image/tiff"
    return "image/png"


def image_data_url(image_bytes: bytes) -> str:
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{detect_image_mime(image_bytes)};base64,{encoded}"


def vision_chat(
    prompt: str,
    image_bytes: bytes,
    *,
    model: str | None = None,
    temperature: float = 0.1,
    max_tokens: int = 4096,
    timeout: float | None = None,
) -> tuple[str, str | None]:
    """Send one image plus an instruction; return ``(content, finish_reason)``."""
    client = _get_client()
    response = client.chat.completions.create(
        model=model or settings.vision_model,
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {"url": image_data_url(image_bytes)}},
                    {"type": "text", "text": prompt},
                ],
            },
        ],
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
    )
    if not response.choices:
        return "", None
    choice = response.choices[0]
    content = choice.message.content or ""
    logger.debug(
        "Vision response (%d chars, finish=%s): %s…",
        len(content), choice.finish_reason, content[:120],
    )
    return content.strip(), choice.finish_reason
