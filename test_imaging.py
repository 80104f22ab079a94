import math
from io import BytesIO

import pytest
from PIL import Image, ImageDraw

from errors import ImageDecodeError
from imaging import (
    MAX_WIDTH, NormalizedRaster, compress_image, decode_image, enhance, normalize, otsu_threshold
)


def _png(img):
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _receipt_image(width=600, height=300):
    img = Image.new("RGB", (width, height), (250, 248, 240))
    draw = ImageDraw.Draw(img)
    for row, line in enumerate(["BURGER 12.50", "FRIES 3.10", "TOTAL 15.60"]):
        draw.text((20, 20 + row * 40), line, fill=(20, 20, 20))
    return img


def test_otsu_separates_bimodal_histogram():
    hist = [0] * 256
    hist[10] = 100
    hist[200] = 100
    threshold = otsu_threshold(hist)
    assert 10 <= threshold < 200


def test_otsu_uneven_classes():
    hist = [0] * 256
    for level in range(0, 40):
        hist[level] = 5
    for level in range(180, 256):
        hist[level] = 50
    threshold = otsu_threshold(hist)
    assert 39 <= threshold < 180


def test_otsu_empty_histogram():
    assert otsu_threshold([0] * 256) == 0


def test_enhance_uses_bt709_and_contrast():
    green = Image.new("RGB", (1, 1), (0, 255, 0))
    value = enhance(green).getpixel((0, 0))
    # 0.7152 * 255 = 182.4 -> (182.4 - 128) * 1.25 + 128 = 196
    assert abs(value - 196) <= 1
    assert enhance(Image.new("RGB", (1, 1), (0, 0, 0))).getpixel((0, 0)) == 0
    assert enhance(Image.new("RGB", (1, 1), (255, 255, 255))).getpixel((0, 0)) == 255


def test_normalize_produces_binary_raster():
    raster = normalize(_png(_receipt_image()))
    assert isinstance(raster, NormalizedRaster)
    assert raster.binarized
    assert raster.image.mode == "L"
    assert set(raster.image.getdata()) <= {0, 255}
    assert (raster.width, raster.height) == (600, 300)


def test_normalize_keeps_clean_text_legible():
    raster = normalize(_png(_receipt_image()))
    pixels = list(raster.image.getdata())
    white = pixels.count(255)
    black = pixels.count(0)
    # paper stays white, ink survives thresholding
    assert white > len(pixels) * 0.8
    assert black > 0
    assert raster.image.getpixel((599, 299)) == 255


def test_normalize_downscales_wide_images():
    raster = normalize(_png(Image.new("RGB", (3200, 100), "white")))
    assert raster.width == MAX_WIDTH
    assert raster.height == 50


def test_normalize_rotation_expands_canvas():
    raster = normalize(_receipt_image(400, 200), rotate_degrees=6)
    theta = math.radians(6)
    width = 400 * abs(math.cos(theta)) + 200 * abs(math.sin(theta))
    height = 200 * abs(math.cos(theta)) + 400 * abs(math.sin(theta))
    # Pillow rounds the rotated bounding box outwards
    assert math.floor(width) <= raster.width <= math.ceil(width) + 1
    assert math.floor(height) <= raster.height <= math.ceil(height) + 1
    # corners are filled as paper, not ink
    assert raster.image.getpixel((0, 0)) == 255


def test_normalize_does_not_mutate_input():
    img = _receipt_image()
    normalize(img, rotate_degrees=-3)
    assert img.mode == "RGB"
    assert img.size == (600, 300)


def test_normalize_rejects_undecodable_bytes():
    with pytest.raises(ImageDecodeError):
        normalize(b"definitely not an image")


def test_decode_image_loads_png():
    img = decode_image(_png(Image.new("RGB", (10, 20), "white")))
    assert img.size == (10, 20)


def test_raster_png_roundtrip():
    raster = normalize(_png(_receipt_image(100, 50)))
    assert Image.open(BytesIO(raster.to_png())).size == (100, 50)


def test_compress_image_bounds_width():
    data = compress_image(_png(Image.new("RGB", (2800, 1000), "white")))
    img = Image.open(BytesIO(data))
    assert img.format == "JPEG"
    assert img.size == (1400, 500)


def test_compress_image_rejects_garbage():
    with pytest.raises(ImageDecodeError):
        compress_image(b"\x00\x01\x02")
