import io
import math
import base64
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

import requests
import pytesseract
from PIL import Image
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

import config
from errors import ExtractionError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class TextExtractor(ABC):
    """Recognition engine contract used by the extracting stage."""

    name = "base"

    @abstractmethod
    def extract_text(self, image_path: Path, on_progress: Optional[ProgressCallback] = None) -> str:
        """
        Recognise the text on ``image_path``.

        ``on_progress`` receives fractions in [0, 1], in order. Raises
        ExtractionError when recognition fails.
        """


class TesseractOCR(TextExtractor):
    """Local recognition with the tesseract binary (via pytesseract)."""

    name = "tesseract"

    # --psm 6: assume a single uniform block of text, which suits receipts
    TESSERACT_CONFIG = "--oem 3 --psm 6"

    def __init__(self, lang: str = config.TESSERACT_LANG):
        self.lang = lang

    def extract_text(self, image_path: Path, on_progress: Optional[ProgressCallback] = None) -> str:
        if on_progress:
            on_progress(0.0)
        try:
            with Image.open(image_path) as img:
                text = pytesseract.image_to_string(img, lang=self.lang, config=self.TESSERACT_CONFIG)
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as e:
            raise ExtractionError(f"Tesseract failed on {Path(image_path).name}: {e}") from e
        if on_progress:
            on_progress(1.0)
        return text.strip()


class VisionOCR(TextExtractor):
    """Recognition through an OpenAI-compatible vision model endpoint."""

    name = "vision"

    def __init__(
        self,
        model_name: str = config.VISION_MODEL_NAME,
        model_url: str = config.VISION_MODEL_URL,
        api_key: str = config.VISION_MODEL_API_KEY,
        max_pixels: int = config.VISION_MAX_PIXELS,
        timeout: int = config.VISION_TIMEOUT_SECONDS,
    ):
        self.model_name = model_name
        self.model_url = model_url
        self.max_pixels = max_pixels
        self.timeout = timeout

        if not api_key or not model_url:
            logger.warning(f"[OCR] API credentials missing for {model_name}")

        self.headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}"
        }

    def _process_image(self, image_path: Path) -> str:
        """Reads image, resizes if too big, and returns base64 string."""
        with Image.open(image_path) as img:
            width, height = img.size
            total_pixels = width * height

            if total_pixels > self.max_pixels:
                # scale = sqrt(target / current), with a small safety margin
                scale_factor = math.sqrt(self.max_pixels / total_pixels)
                new_width = int(width * scale_factor * 0.99)
                new_height = int(height * scale_factor * 0.99)
                logger.info(
                    f"[OCR] Compressing {Path(image_path).name}: "
                    f"{width}x{height} -> {new_width}x{new_height}"
                )
                img = img.resize((new_width, new_height), Image.Resampling.LANCZOS)

            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")

            buffer = io.BytesIO()
            img.save(buffer, format="JPEG", quality=90)
            return base64.b64encode(buffer.getvalue()).decode('utf-8')

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        # Retry ONLY on network errors or server 5xx errors
        retry=retry_if_exception_type(requests.exceptions.RequestException),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _request_text(self, b64_image: str) -> str:
        payload = {
            "model": self.model_name,
            "messages": [
                {"role": "system", "content": [{"type": "text", "text": config.SYSTEM_PROMPT_RECEIPT}]},
                {"role": "user", "content": [
                    {"type": "text", "text": "Transcribe this receipt."},
                    {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{b64_image}"}}
                ]}
            ]
        }
        response = requests.post(self.model_url, json=payload, headers=self.headers, timeout=self.timeout)
        response.raise_for_status()
        try:
            result = response.json()
        except requests.exceptions.JSONDecodeError as e:
            raise ExtractionError(f"Invalid JSON response (status {response.status_code})") from e
        return result.get("choices", [{}])[0].get("message", {}).get("content", "") or ""

    def extract_text(self, image_path: Path, on_progress: Optional[ProgressCallback] = None) -> str:
        if not self.model_url:
            raise ExtractionError(f"No endpoint configured for vision model {self.model_name}")
        if on_progress:
            on_progress(0.0)
        try:
            b64_image = self._process_image(image_path)
        except OSError as e:
            raise ExtractionError(f"Cannot read image {Path(image_path).name}: {e}") from e
        if on_progress:
            on_progress(0.2)

        try:
            text = self._request_text(b64_image)
        except requests.exceptions.RequestException as e:
            raise ExtractionError(f"Vision model request failed after retries: {e}") from e
        if on_progress:
            on_progress(1.0)
        return text.strip()


EXTRACTORS = {
    TesseractOCR.name: TesseractOCR,
    VisionOCR.name: VisionOCR,
}


def build_text_extractor(engine: str = config.OCR_ENGINE) -> TextExtractor:
    """Creates the recognition engine selected by configuration."""
    extractor_cls = EXTRACTORS.get(engine.lower())
    if extractor_cls is None:
        raise ValueError(f"Unknown OCR engine '{engine}'. Choose from: {sorted(EXTRACTORS)}")
    logger.info(f"[OCR] Using '{extractor_cls.name}' recognition engine")
    return extractor_cls()
