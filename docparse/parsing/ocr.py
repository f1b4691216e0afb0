"""
OCR provider contract and the failover facade in front of it.

Providers
---------
Every OCR backend implements ``OcrProvider``: it turns one page image into
a single-page ``StructuredDocument``, declares a ``priority`` (lower runs
first) and reports whether it ``is_available()`` (credentials present,
library installed …).  Failures are ``OcrProviderError`` flagged
``retryable`` (timeouts, rate limits, truncated output) or not (bad
credentials, unsupported input).

Two providers ship with the package:
  - ``VisionOcrProvider`` (``docparse.parsing.vision``) – an
    OpenAI-compatible vision model returning layout JSON.  Priority 10.
  - ``EasyOcrProvider`` (below) – local EasyOCR, plain text boxes only.
    Priority 50, used when the vision endpoint is down.

Facade
------
``OcrFacade.recognize`` walks the available providers in priority order.
Each provider gets up to ``max_retries`` attempts with a fixed delay
(tenacity); a non-retryable error moves on to the next provider at once.
When every provider has failed an ``OcrError`` is raised from the last
underlying error.  With no provider available at all the facade raises
``OcrUnavailableError`` before touching the image.
"""

from __future__ import annotations

import importlib.util
import io
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable

from PIL import Image
from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_fixed

from docparse.parsing.config import ParsingSettings, parsing_settings
from docparse.parsing.schemas import LayoutElement, Page, StructuredDocument

logger = logging.getLogger(__name__)

# Suppress noisy "Using CPU" warning from EasyOCR
logging.getLogger("easyocr.easyocr").setLevel(logging.ERROR)

DEFAULT_PRIORITY = 100


# ═══════════════════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════════════════

class OcrError(Exception):
    """The facade could not produce a result for an image."""


class OcrUnavailableError(OcrError):
    """No OCR provider is configured or available."""


class OcrProviderError(Exception):
    """One provider failed on one image."""

    def __init__(self, provider_name: str, message: str, retryable: bool = True) -> None:
        super().__init__(f"[{provider_name}] {message}")
        self.provider_name = provider_name
        self.retryable = retryable


# ═══════════════════════════════════════════════════════════════════════════
# Provider contract
# ═══════════════════════════════════════════════════════════════════════════

class OcrProvider(ABC):
    name: str = "ocr"
    priority: int = DEFAULT_PRIORITY

    @abstractmethod
    def recognize(
        self,
        image_bytes: bytes,
        cancel: threading.Event | None = None,
    ) -> StructuredDocument:
        """Recognise one page image; raise ``OcrProviderError`` on failure.

        *cancel* is set by the scheduler when the page's batch deadline has
        passed; providers should check it between network calls and give up.
        """

    def is_available(self) -> bool:
        return True


def image_size(image_bytes: bytes) -> list[int] | None:
    """[width, height] of an encoded image, or None if PIL cannot read it."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            return [img.width, img.height]
    except (OSError, ValueError):
        return None


# ═══════════════════════════════════════════════════════════════════════════
# Facade
# ═══════════════════════════════════════════════════════════════════════════

class OcrFacade:
    """Priority-ordered failover across OCR providers."""

    service_name = "OcrService"

    def __init__(
        self,
        providers: Iterable[OcrProvider],
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.providers = sorted(providers, key=lambda p: getattr(p, "priority", DEFAULT_PRIORITY))
        self.max_retries = max(1, max_retries if max_retries is not None else parsing_settings.ocr_max_retries)
        delay = retry_delay_ms if retry_delay_ms is not None else parsing_settings.ocr_retry_delay_ms
        self.retry_delay_seconds = max(0, delay) / 1000
        self._sleep = sleep

    def active_providers(self) -> list[OcrProvider]:
        return [p for p in self.providers if p.is_available()]

    def active_provider_count(self) -> int:
        return len(self.active_providers())

    def is_available(self) -> bool:
        return self.active_provider_count() > 0

    @property
    def model_info(self) -> str:
        active = self.active_providers()
        return active[0].name if active else self.service_name

    def recognize(
        self,
        image_bytes: bytes,
        cancel: threading.Event | None = None,
    ) -> StructuredDocument:
        if not self.providers:
            raise OcrUnavailableError("No OCR provider configured")
        active = self.active_providers()
        if not active:
            raise OcrUnavailableError(
                f"No OCR provider available ({len(self.providers)} configured)"
            )

        last_error: Exception | None = None
        for provider in active:
            if cancel is not None and cancel.is_set():
                raise OcrError("OCR cancelled before completion")
            try:
                document = self._recognize_with_retries(provider, image_bytes, cancel)
                logger.debug("OCR succeeded with %s.", provider.name)
                return document
            except OcrProviderError as exc:
                last_error = exc
                logger.warning(
                    "Provider %s failed (%s): %s",
                    provider.name, "retryable" if exc.retryable else "fatal", exc,
                )

        raise OcrError(f"All {len(active)} OCR providers failed") from last_error

    def _recognize_with_retries(
        self,
        provider: OcrProvider,
        image_bytes: bytes,
        cancel: threading.Event | None,
    ) -> StructuredDocument:
        def should_retry(exc: BaseException) -> bool:
            if cancel is not None and cancel.is_set():
                return False
            return isinstance(exc, OcrProviderError) and exc.retryable

        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_fixed(self.retry_delay_seconds),
            retry=retry_if_exception(should_retry),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
            **kwargs,
        )
        return retrying(self._attempt, provider, image_bytes, cancel)

    @staticmethod
    def _attempt(
        provider: OcrProvider,
        image_bytes: bytes,
        cancel: threading.Event | None,
    ) -> StructuredDocument:
        try:
            document = provider.recognize(image_bytes, cancel=cancel)
        except OcrProviderError:
            raise
        except Exception as exc:  # unexpected provider bug or transport error
            raise OcrProviderError(provider.name, f"{type(exc).__name__}: {exc}") from exc
        if document is None or not document.pages:
            raise OcrProviderError(provider.name, "empty OCR result")
        return document


# ═══════════════════════════════════════════════════════════════════════════
# Local EasyOCR provider
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class OCRBox:
    text: str
    confidence: float
    bbox: tuple[int, int, int, int]  # (x0, y0, x1, y1)


class EasyOcrProvider(OcrProvider):
    """Offline fallback: EasyOCR text boxes, one text element per box."""

    name = "EasyOCR"
    priority = 50

    def __init__(self, settings: ParsingSettings | None = None) -> None:
        self.settings = settings or parsing_settings
        self._reader = None
        self._reader_lock = threading.Lock()

    def is_available(self) -> bool:
        return self.settings.enable_local_ocr and importlib.util.find_spec("easyocr") is not None

    def _get_reader(self):
        """Lazy-initialise the EasyOCR reader (model download on first use)."""
        with self._reader_lock:
            if self._reader is None:
                import easyocr

                self._reader = easyocr.Reader(self.settings.ocr_languages, gpu=self.settings.ocr_gpu)
                logger.info("EasyOCR reader initialised (gpu=%s).", self.settings.ocr_gpu)
            return self._reader

    def read_boxes(self, image_bytes: bytes) -> list[OCRBox]:
        """OCR boxes sorted top-to-bottom, left-to-right."""
        boxes: list[OCRBox] = []
        for bbox_pts, text, conf in self._get_reader().readtext(image_bytes):
            text = text.strip()
            if not text:
                continue
            # bbox_pts is [[x0,y0],[x1,y0],[x1,y1],[x0,y1]]
            xs = [p[0] for p in bbox_pts]
            ys = [p[1] for p in bbox_pts]
            boxes.append(
                OCRBox(
                    text=text,
                    confidence=float(conf),
                    bbox=(int(min(xs)), int(min(ys)), int(max(xs)), int(max(ys))),
                )
            )
        boxes.sort(key=lambda b: (b.bbox[1], b.bbox[0]))
        return boxes

    def recognize(
        self,
        image_bytes: bytes,
        cancel: threading.Event | None = None,
    ) -> StructuredDocument:
        try:
            boxes = self.read_boxes(image_bytes)
        except (OSError, ValueError) as exc:
            raise OcrProviderError(self.name, f"unreadable image: {exc}", retryable=False) from exc

        layout = [
            LayoutElement(
                element_id=f"e{i}",
                type="text",
                bbox=[b.bbox[0], b.bbox[1], b.bbox[2] - b.bbox[0], b.bbox[3] - b.bbox[1]],
                text=b.text,
                md_text=b.text,
                confidence=b.confidence,
            )
            for i, b in enumerate(boxes, 1)
        ]
        page = Page(page_no=1, image_size=image_size(image_bytes), layout=layout)
        return StructuredDocument(pages=[page], model_info=self.name)
