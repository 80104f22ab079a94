# ocr.py
import asyncio
import logging
import math
import os
import string
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import IntEnum
from io import BytesIO
from typing import List, Optional, Protocol, Sequence

import pytesseract
from dotenv import load_dotenv
from PIL import Image
from pytesseract import Output, TesseractError, TesseractNotFoundError

from errors import EngineUnavailable, ImageDecodeError, RecognitionTimeout
from imaging import NormalizedRaster, decode_image, normalize

load_dotenv()

logger = logging.getLogger(__name__)

# Check if Google Vision is enabled via environment variable
USE_GOOGLE = os.getenv('USE_GOOGLE_VISION', '0') == '1'

if USE_GOOGLE:
    from google.cloud import vision

TESSERACT_CMD = os.getenv('TESSERACT_CMD')
if TESSERACT_CMD:
    pytesseract.pytesseract.tesseract_cmd = TESSERACT_CMD

OCR_LANG = os.getenv('OCR_LANG', 'eng')
POOL_SIZE = int(os.getenv('OCR_POOL_SIZE', '2'))
OCR_TIMEOUT_SECONDS = float(os.getenv('OCR_TIMEOUT_SECONDS', '90'))

CANDIDATE_ANGLES = (-6, -3, 0, 3, 6)
DEFAULT_DPI = 300
CHAR_WHITELIST = string.ascii_letters + string.digits + ".$-:,/% "
MIN_TEXT_LENGTH = 10
MIN_CONFIDENCE = 45


class PageSegmentationMode(IntEnum):
    OSD_ONLY = 0
    SINGLE_COLUMN = 4
    UNIFORM_BLOCK = 6
    SPARSE_TEXT = 11


@dataclass(frozen=True)
class RecognitionAttempt:
    mode: PageSegmentationMode
    dpi_hint: int = DEFAULT_DPI
    char_whitelist: Optional[str] = None

    def __post_init__(self):
        # PageSegmentationMode(...) raises ValueError for unknown modes
        object.__setattr__(self, "mode", PageSegmentationMode(self.mode))
        if self.dpi_hint <= 0:
            raise ValueError(f"dpi_hint must be positive, got {self.dpi_hint}")

    def tesseract_config(self) -> str:
        config = f"--psm {int(self.mode)} --dpi {self.dpi_hint} -c preserve_interword_spaces=1"
        if self.char_whitelist:
            config += f' -c "tessedit_char_whitelist={self.char_whitelist}"'
        return config


@dataclass(frozen=True)
class RecognitionResult:
    text: str = ""
    confidence: float = 0.0

    @property
    def is_weak(self) -> bool:
        return len(self.text.strip()) < MIN_TEXT_LENGTH or self.confidence < MIN_CONFIDENCE


@dataclass(frozen=True)
class AngleCandidate:
    angle_degrees: int
    score: float
    raster: NormalizedRaster


QUICK_ATTEMPT = RecognitionAttempt(PageSegmentationMode.UNIFORM_BLOCK)
PRIMARY_ATTEMPT = RecognitionAttempt(PageSegmentationMode.UNIFORM_BLOCK, char_whitelist=CHAR_WHITELIST)
FALLBACK_MODES = (
    PageSegmentationMode.SINGLE_COLUMN,
    PageSegmentationMode.SPARSE_TEXT,
    PageSegmentationMode.OSD_ONLY,
)


class RecognitionEngine(Protocol):
    def start(self) -> None: ...

    def recognize(self, image: Image.Image, attempt: RecognitionAttempt) -> RecognitionResult: ...

    def close(self) -> None: ...


def _result_from_data(data: dict) -> RecognitionResult:
    """Rebuild line-ordered text and mean word confidence from image_to_data output."""
    lines = {}
    confs = []
    for i, word in enumerate(data.get('text', [])):
        if not word or not word.strip():
            continue
        key = (data['block_num'][i], data['par_num'][i], data['line_num'][i])
        lines.setdefault(key, []).append(word.strip())
        try:
            conf = float(data['conf'][i])
        except (TypeError, ValueError):
            continue
        if conf >= 0:
            confs.append(conf)
    text = "\n".join(" ".join(words) for words in lines.values())
    confidence = sum(confs) / len(confs) if confs else 0.0
    return RecognitionResult(text=text, confidence=confidence)


class TesseractEngine:
    """Local tesseract binary driven through pytesseract."""

    def __init__(self, lang: str = OCR_LANG):
        self.lang = lang

    def start(self):
        try:
            version = pytesseract.get_tesseract_version()
        except (TesseractNotFoundError, TesseractError, OSError) as exc:
            raise EngineUnavailable(f"Tesseract is not available: {exc}") from exc
        logger.debug("Tesseract %s ready", version)

    def recognize(self, image, attempt):
        try:
            data = pytesseract.image_to_data(
                image, lang=self.lang, config=attempt.tesseract_config(), output_type=Output.DICT
            )
        except TesseractError as exc:
            # psm 0 only runs orientation detection and may refuse to emit TSV
            if attempt.mode is PageSegmentationMode.OSD_ONLY:
                logger.debug("OSD-only pass produced no text: %s", exc)
                return RecognitionResult()
            raise EngineUnavailable(f"Tesseract failed: {exc}") from exc
        except (TesseractNotFoundError, OSError) as exc:
            raise EngineUnavailable(f"Tesseract failed: {exc}") from exc
        return _result_from_data(data)

    def close(self):
        pass


class GoogleVisionEngine:
    """Google Cloud Vision document text detection. Segmentation modes are ignored."""

    def __init__(self):
        self._client = None

    def start(self):
        from google.api_core.exceptions import GoogleAPIError
        from google.auth.exceptions import DefaultCredentialsError
        try:
            self._client = vision.ImageAnnotatorClient()
        except (DefaultCredentialsError, GoogleAPIError) as exc:
            raise EngineUnavailable(f"Google Vision client failed: {exc}") from exc

    def recognize(self, image, attempt):
        from google.api_core.exceptions import GoogleAPIError
        buf = BytesIO()
        image.save(buf, format="PNG")
        try:
            response = self._client.document_text_detection(image=vision.Image(content=buf.getvalue()))
        except GoogleAPIError as exc:
            raise EngineUnavailable(f"Google Vision request failed: {exc}") from exc
        if response.error.message:
            raise EngineUnavailable(f"Google Vision error: {response.error.message}")
        annotation = response.full_text_annotation
        confs = [page.confidence for page in annotation.pages]
        confidence = 100.0 * sum(confs) / len(confs) if confs else 0.0
        return RecognitionResult(text=annotation.text or "", confidence=confidence)

    def close(self):
        self._client = None


def create_engine() -> RecognitionEngine:
    return GoogleVisionEngine() if USE_GOOGLE else TesseractEngine()


class EnginePool:
    """
    Bounded pool of recognition engines. Engines are started lazily and handed
    out through `checkout()`, which always returns (or discards) the engine on exit.
    """

    def __init__(self, factory=None, size: int = POOL_SIZE):
        self._factory = factory or create_engine
        self._size = max(1, size)
        self._slots: Optional[asyncio.Semaphore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._idle: List[RecognitionEngine] = []
        self._closed = False

    def _slots_for_running_loop(self) -> asyncio.Semaphore:
        # Sync callers run each batch in a fresh loop; idle engines carry over
        loop = asyncio.get_running_loop()
        if self._slots is None or self._loop is not loop:
            self._loop = loop
            self._slots = asyncio.Semaphore(self._size)
        return self._slots

    async def _start_engine(self) -> RecognitionEngine:
        engine = self._factory()
        await asyncio.to_thread(engine.start)
        return engine

    @asynccontextmanager
    async def checkout(self):
        if self._closed:
            raise EngineUnavailable("Engine pool is closed")
        async with self._slots_for_running_loop():
            engine = self._idle.pop() if self._idle else await self._start_engine()
            healthy = True
            try:
                yield engine
            except EngineUnavailable:
                healthy = False
                raise
            finally:
                if healthy and not self._closed:
                    self._idle.append(engine)
                else:
                    await asyncio.to_thread(engine.close)

    async def close(self):
        self._closed = True
        idle, self._idle = self._idle, []
        for engine in idle:
            await asyncio.to_thread(engine.close)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()


async def recognize(raster: NormalizedRaster, pool: EnginePool,
                    attempt: RecognitionAttempt = PRIMARY_ATTEMPT) -> RecognitionResult:
    """
    Recognize `raster`, retrying weak results with the fallback segmentation
    modes. The last result is returned even when every attempt was weak.
    """
    async with pool.checkout() as engine:
        result = await asyncio.to_thread(engine.recognize, raster.image, attempt)
        for mode in FALLBACK_MODES:
            if not result.is_weak:
                break
            logger.debug(
                "Weak result (%d chars, conf %.1f) with psm %d, retrying with psm %d",
                len(result.text.strip()), result.confidence, attempt.mode, mode,
            )
            attempt = replace(attempt, mode=mode)
            result = await asyncio.to_thread(engine.recognize, raster.image, attempt)
    return result


def angle_score(result: RecognitionResult) -> float:
    return result.confidence + min(len(result.text.strip()) / 50, 20)


async def _evaluate_angle(image: Image.Image, angle: int, pool: EnginePool) -> AngleCandidate:
    raster = await asyncio.to_thread(normalize, image, angle)
    try:
        async with pool.checkout() as engine:
            result = await asyncio.to_thread(engine.recognize, raster.image, QUICK_ATTEMPT)
    except BaseException:
        raster.close()
        raise
    return AngleCandidate(angle_degrees=angle, score=angle_score(result), raster=raster)


async def select_best_angle(image, pool: EnginePool,
                            candidate_angles: Sequence[int] = CANDIDATE_ANGLES) -> AngleCandidate:
    """
    Quick-pass every candidate rotation and keep the highest scoring one.
    Ties go to the candidate listed first; the losing rasters are released.
    """
    if not candidate_angles:
        raise ValueError("candidate_angles must not be empty")
    if isinstance(image, (bytes, bytearray)):
        image = await asyncio.to_thread(decode_image, bytes(image))

    outcomes = await asyncio.gather(
        *(_evaluate_angle(image, angle, pool) for angle in candidate_angles),
        return_exceptions=True,
    )
    candidates = [o for o in outcomes if isinstance(o, AngleCandidate)]
    errors = [o for o in outcomes if isinstance(o, BaseException)]
    if errors:
        for candidate in candidates:
            candidate.raster.close()
        raise errors[0]

    best = candidates[0]
    for candidate in candidates[1:]:
        if candidate.score > best.score:
            best = candidate
    for candidate in candidates:
        if candidate is not best:
            candidate.raster.close()

    logger.debug(
        "Angle scores: %s -> %d",
        ", ".join(f"{c.angle_degrees}:{c.score:.1f}" for c in candidates), best.angle_degrees,
    )
    return best


async def _process_image(data: bytes, pool: EnginePool) -> RecognitionResult:
    best = await select_best_angle(data, pool)
    try:
        return await recognize(best.raster, pool)
    finally:
        best.raster.close()


async def _image_outcome(data: bytes, pool: EnginePool):
    """Per-image failures come back as values; anything else aborts the batch."""
    try:
        return await _process_image(data, pool)
    except (ImageDecodeError, EngineUnavailable) as exc:
        return exc


async def _aggregate(images: Sequence[bytes], pool: Optional[EnginePool]) -> RecognitionResult:
    if pool is None:
        async with EnginePool() as owned:
            return await _aggregate(images, owned)

    tasks = [asyncio.ensure_future(_image_outcome(data, pool)) for data in images]
    try:
        outcomes = await asyncio.gather(*tasks)
    except BaseException:
        # RenderingUnavailable (or cancellation) stops the remaining images now
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    results = []
    engine_errors = []
    for index, outcome in enumerate(outcomes):
        if isinstance(outcome, ImageDecodeError):
            logger.warning("Skipping image %d: %s", index, outcome)
        elif isinstance(outcome, EngineUnavailable):
            logger.warning("Recognition failed for image %d: %s", index, outcome)
            engine_errors.append(outcome)
        else:
            results.append(outcome)

    if not results and engine_errors:
        raise engine_errors[-1]

    texts = [r.text.strip() for r in results if r.text and r.text.strip()]
    if not texts:
        return RecognitionResult(text="", confidence=0.0)
    confs = [r.confidence for r in results
             if isinstance(r.confidence, (int, float)) and math.isfinite(r.confidence)]
    confidence = sum(confs) / len(confs) if confs else 0.0

    logger.debug("Aggregated %d/%d images, confidence %.1f", len(texts), len(images), confidence)
    return RecognitionResult(text="\n".join(texts), confidence=confidence)


async def process_receipt_images(images: Sequence[bytes], pool: Optional[EnginePool] = None,
                                 timeout: Optional[float] = None) -> RecognitionResult:
    """
    Run preprocessing, angle selection and recognition over every image and
    concatenate the texts in input order.

    Undecodable images are skipped. Raises EngineUnavailable when no image
    could be recognized because the engine failed, RenderingUnavailable when
    preprocessing is impossible, and RecognitionTimeout when `timeout` expires.
    """
    if timeout is None:
        return await _aggregate(images, pool)
    try:
        return await asyncio.wait_for(_aggregate(images, pool), timeout)
    except asyncio.TimeoutError as exc:
        raise RecognitionTimeout(f"Recognition did not finish within {timeout:g}s") from exc


def process_receipt_images_sync(images: Sequence[bytes], timeout: Optional[float] = OCR_TIMEOUT_SECONDS,
                                pool: Optional[EnginePool] = None) -> RecognitionResult:
    return asyncio.run(process_receipt_images(images, pool=pool, timeout=timeout))
