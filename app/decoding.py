import io
import logging
from typing import Any, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)


class DecodeError(Exception):
    """No barcode could be read from an uploaded image."""


def _first_symbol(image: Any) -> Optional[Tuple[str, str]]:
    # loaded on first use: pyzbar binds the system zbar library at import
    from pyzbar import pyzbar

    symbols = pyzbar.decode(image)
    for symbol in symbols:
        try:
            text = symbol.data.decode("utf-8")
        except UnicodeDecodeError:
            text = symbol.data.decode("latin-1")
        if text.strip():
            return text, symbol.type
    return None


def decode_from_video_frame(frame: Any) -> Optional[Tuple[str, str]]:
    """
    Decode one camera frame (numpy array or PIL image).

    Most frames hold no code; that, and any decoder hiccup, is just None.
    """
    try:
        return _first_symbol(frame)
    except Exception as e:
        logger.debug(f"Frame decode failed: {e}")
        return None


def decode_from_image(data: bytes) -> Tuple[str, str]:
    """Decode an uploaded image, returning (text, symbology) or raising DecodeError."""
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise DecodeError("Could not load the selected image file.") from e

    found = _first_symbol(image)
    if found is None:
        # second attempt on a flattened greyscale copy, like redrawing onto a canvas
        try:
            found = _first_symbol(ImageOps.grayscale(ImageOps.exif_transpose(image)))
        except Exception as e:
            logger.debug(f"Greyscale retry failed: {e}")
    if found is None:
        raise DecodeError("Could not read barcode from image. Try a clearer image with better lighting.")
    return found
