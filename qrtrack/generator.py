"""Barcode rendering: ECC levels, byte capacity and level auto-selection on top of `qrcode`."""

import io
from enum import Enum

import qrcode
import qrcode.constants
from qrcode.exceptions import DataOverflowError
from PIL import Image

from qrtrack.errors import ValidationError
from qrtrack.logging import audit, get_logger, trace

log = get_logger("generator")


class ECCLevel(Enum):
    L = qrcode.constants.ERROR_CORRECT_L  # 7%
    M = qrcode.constants.ERROR_CORRECT_M  # 15%
    Q = qrcode.constants.ERROR_CORRECT_Q  # 25%
    H = qrcode.constants.ERROR_CORRECT_H  # 30%


ECC_NAMES = {"L": ECCLevel.L, "M": ECCLevel.M, "Q": ECCLevel.Q, "H": ECCLevel.H}
ECC_ORDER = ("L", "M", "Q", "H")

# Byte-mode capacity of a version 40 symbol per level
MAX_PAYLOAD_BYTES = {"L": 2953, "M": 2331, "Q": 1663, "H": 1273}

# (minimum payload length in bytes, level floor); longest match wins
_AUTO_LEVEL_STEPS = ((0, "L"), (129, "Q"), (385, "H"))

MIN_SIZE = 64
MAX_SIZE = 4096
SUPPORTED_FORMATS = ("PNG", "JPEG", "BMP")


def ecc_rank(level: str) -> int:
    return ECC_ORDER.index(level)


def auto_level(payload_length: int, floor: str) -> str:
    """Lowest level allowed for a payload of this length, never below `floor`.

    Deterministic and non-decreasing in `payload_length`.
    """
    selected = floor
    for threshold, level in _AUTO_LEVEL_STEPS:
        if payload_length >= threshold and ecc_rank(level) > ecc_rank(selected):
            selected = level
    return selected


def check_capacity(payload_length: int, level: str):
    capacity = MAX_PAYLOAD_BYTES[level]
    if payload_length > capacity:
        raise ValidationError(
            f"Payload of {payload_length} bytes exceeds the {capacity}-byte capacity of level {level}",
            details={"payload_bytes": payload_length, "capacity": capacity, "error_correction": level},
        )


@trace
def render_code(
    data: str,
    size: int,
    ecc: str = "M",
    margin: int = 4,
    dark_color: str = "#000000",
    light_color: str = "#FFFFFF",
) -> Image.Image:
    """Render `data` as a size x size RGB raster.

    The module pitch is the largest integer that fits; leftover pixels widen
    the quiet zone so every module stays square and pixel-exact.
    """
    qr = qrcode.QRCode(
        version=None,
        error_correction=ECC_NAMES[ecc].value,
        box_size=1,
        border=margin,
    )
    qr.add_data(data)
    try:
        qr.make(fit=True)
    except DataOverflowError as e:
        raise ValidationError(f"Payload does not fit a level {ecc} code", details={"error_correction": ecc}) from e

    modules = qr.modules_count + 2 * margin
    box_size = size // modules
    if box_size < 1:
        raise ValidationError(
            f"Size {size}px is too small for a {modules}-module code",
            details={"size": size, "modules": modules},
        )
    qr.box_size = box_size
    code = qr.make_image(fill_color=dark_color, back_color=light_color).convert("RGB")

    img = code
    if code.size != (size, size):
        img = Image.new("RGB", (size, size), light_color)
        offset = (size - code.size[0]) // 2
        img.paste(code, (offset, offset))

    audit("code.rendered", logger=log,
          version=qr.version, modules=modules, box_size=box_size,
          ecc=ecc, image_px=f"{img.size[0]}x{img.size[1]}")
    return img


def to_bytes(image: Image.Image, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()
