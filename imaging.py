# imaging.py
"""
Receipt image preprocessing for OCR.

Downscales oversized photos, optionally rotates them onto an expanded canvas,
converts to BT.709 luminance, stretches contrast and binarizes with a global
Otsu threshold.
"""
import logging
from dataclasses import dataclass
from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

from errors import ImageDecodeError, RenderingUnavailable

logger = logging.getLogger(__name__)

MAX_WIDTH = 1600
CONTRAST = 1.25
# RGB -> L conversion matrix (ITU-R BT.709 luma coefficients)
BT709_MATRIX = (0.2126, 0.7152, 0.0722, 0)
PAPER_WHITE = (255, 255, 255)

_CONTRAST_LUT = [
    max(0, min(255, round((level - 128) * CONTRAST + 128))) for level in range(256)
]


@dataclass(frozen=True)
class NormalizedRaster:
    """Single-channel (mode "L") raster ready for recognition."""
    image: Image.Image
    binarized: bool = False
    threshold: int = -1

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    def to_png(self) -> bytes:
        buf = BytesIO()
        self.image.save(buf, format="PNG")
        return buf.getvalue()

    def close(self):
        self.image.close()


def decode_image(data: bytes) -> Image.Image:
    """Decode an encoded image buffer (JPEG/PNG/...) into a loaded Pillow image."""
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise ImageDecodeError(f"Could not decode image: {exc}") from exc
    return img


def downscale(img: Image.Image, max_width: int = MAX_WIDTH) -> Image.Image:
    if img.width <= max_width:
        return img
    scale = max_width / img.width
    height = max(1, int(img.height * scale))
    return img.resize((max_width, height), Image.LANCZOS)


def otsu_threshold(histogram) -> int:
    """
    Return the intensity level that maximizes the between-class variance
    wB * wF * (mB - mF)^2 of a 256-bin luminance histogram.
    Pixels at or below the level form the background class.
    """
    total = sum(histogram)
    if not total:
        return 0
    sum_all = sum(level * count for level, count in enumerate(histogram))

    sum_b = 0.0
    w_b = 0
    best_variance = 0.0
    threshold = 0
    for level, count in enumerate(histogram):
        w_b += count
        if w_b == 0:
            continue
        w_f = total - w_b
        if w_f == 0:
            break
        sum_b += level * count
        m_b = sum_b / w_b
        m_f = (sum_all - sum_b) / w_f
        variance = w_b * w_f * (m_b - m_f) ** 2
        if variance > best_variance:
            best_variance = variance
            threshold = level
    return threshold


def enhance(rgb: Image.Image) -> Image.Image:
    """BT.709 luminance followed by a contrast stretch around mid-gray."""
    return rgb.convert("L", BT709_MATRIX).point(_CONTRAST_LUT)


def normalize(image, rotate_degrees: int = 0) -> NormalizedRaster:
    """
    Produce a fresh binarized raster from `image` (encoded bytes or a decoded
    Pillow image), rotated clockwise by `rotate_degrees`. The input is not mutated.
    """
    if isinstance(image, (bytes, bytearray)):
        image = decode_image(bytes(image))

    try:
        canvas = downscale(image.convert("RGB"))
        if rotate_degrees:
            # Pillow rotates counter-clockwise; expand=True grows the canvas to
            # w*|cos| + h*|sin| by h*|cos| + w*|sin| so nothing is clipped.
            canvas = canvas.rotate(
                -rotate_degrees, resample=Image.BICUBIC, expand=True, fillcolor=PAPER_WHITE
            )
        gray = enhance(canvas)
        threshold = otsu_threshold(gray.histogram())
        binary = gray.point(lambda level: 255 if level > threshold else 0)
    except (OSError, ValueError, MemoryError) as exc:
        raise RenderingUnavailable(f"Could not render image: {exc}") from exc

    logger.debug(
        "Normalized %dx%d raster at %d deg (otsu threshold %d)",
        binary.width, binary.height, rotate_degrees, threshold,
    )
    return NormalizedRaster(binary, binarized=True, threshold=threshold)


def compress_image(data: bytes, max_width: int = 1400, quality: int = 70) -> bytes:
    """Re-encode an upload as a bounded-width JPEG, honouring EXIF orientation."""
    img = decode_image(data)
    try:
        img = ImageOps.exif_transpose(img).convert("RGB")
        img = downscale(img, max_width)
        buf = BytesIO()
        img.save(buf, format="JPEG", quality=quality, optimize=True)
    except (OSError, ValueError, MemoryError) as exc:
        raise RenderingUnavailable(f"Could not re-encode image: {exc}") from exc
    return buf.getvalue()
