"""JPEG compression for photo uploads: bounded dimensions and byte budget."""
import io

from PIL import Image, ImageOps, UnidentifiedImageError

from sonder.sync.errors import PhotoCompressionError

MIN_QUALITY = 10
QUALITY_STEP = 10


def compress_image(
    data: bytes,
    *,
    max_dimension: int = 1200,
    max_bytes: int = 500_000,
    quality: int = 80,
) -> bytes:
    """
    Resize and re-encode an image as JPEG.

    The longest edge is scaled down to max_dimension (aspect ratio kept,
    never upscaled). Quality then steps down by 10 from `quality` until the
    output fits max_bytes or quality reaches 10; at that floor the result is
    returned even if it is still over budget.

    Args:
        data: Encoded image bytes in any format Pillow can read.

    Returns:
        JPEG bytes.

    Raises:
        PhotoCompressionError: if the data is not a decodable image.
    """
    try:
        with Image.open(io.BytesIO(data)) as original:
            img = ImageOps.exif_transpose(original)
            if img.mode != "RGB":
                img = img.convert("RGB")
            img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

            encoded = _encode_jpeg(img, quality)
            while len(encoded) > max_bytes and quality > MIN_QUALITY:
                quality = max(MIN_QUALITY, quality - QUALITY_STEP)
                encoded = _encode_jpeg(img, quality)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise PhotoCompressionError(f"cannot compress image: {exc}") from exc
    return encoded


def _encode_jpeg(img: Image.Image, quality: int) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()
