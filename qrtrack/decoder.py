"""Decoder: captured image -> payload, fingerprint and geometric confidence.

Pipeline: load (bytes, base64/data URL, or remote URL) -> normalize (bound the
working size, single-channel intensity) -> localize and extract (ZBar via pyzbar
when available, then OpenCV) -> parse the payload -> fingerprint.
"""

import base64
import binascii
import io
import re
import time
from dataclasses import dataclass

import cv2
import httpx
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from qrtrack.errors import NoCodeFoundError, ValidationError
from qrtrack.hashing import fingerprint
from qrtrack.logging import audit, get_logger, trace
from qrtrack.payload import Payload, canonicalize, parse_payload
from qrtrack.quality import geometric_confidence

# pyzbar needs the native zbar library; OpenCV alone is enough to decode.
try:
    from pyzbar.pyzbar import ZBarSymbol
    from pyzbar.pyzbar import decode as pyzbar_decode
    _HAS_PYZBAR = True
except ImportError:
    _HAS_PYZBAR = False

log = get_logger("decoder")

_DATA_URL = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")


@dataclass
class Localized:
    """A barcode found in an image: its text content and four corner points."""

    data: bytes
    corners: list[tuple[float, float]] | None
    decoder: str


@dataclass
class DecodedCode:
    payload: Payload
    text: str
    canonical: bytes
    fingerprint: str
    confidence: float
    corners: list[tuple[float, float]] | None
    decoder: str
    decode_time_ms: float


def decode_base64_image(data: str) -> bytes:
    """Accept plain base64 or a `data:image/...;base64,` URL."""
    try:
        return base64.b64decode(_DATA_URL.sub("", data.strip()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("image_data is not valid base64") from e


@trace
def fetch_image(url: str, timeout: float = 10.0, transport: httpx.BaseTransport | None = None) -> bytes:
    """Download a remote image. Network and HTTP errors are reported as validation failures."""
    try:
        with httpx.Client(timeout=timeout, transport=transport, follow_redirects=True) as client:
            response = client.get(url)
            response.raise_for_status()
            return response.content
    except httpx.HTTPError as e:
        raise ValidationError(f"Could not fetch image: {e}", details={"image_url": url}) from e


def load_image(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError("Image data is not a readable raster image") from e
    return image


def normalize(image: Image.Image, max_dimension: int = 800) -> np.ndarray:
    """Apply EXIF orientation, shrink to fit `max_dimension` (never enlarge), convert to grayscale."""
    image = ImageOps.exif_transpose(image)
    if image.mode in ("RGBA", "LA", "P"):
        # Flatten transparency onto white so transparent quiet zones stay light
        rgba = image.convert("RGBA")
        flat = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        flat.alpha_composite(rgba)
        image = flat
    gray = image.convert("L")
    gray.thumbnail((max_dimension, max_dimension), Image.LANCZOS)
    return np.array(gray)


def _quad(points) -> list[tuple[float, float]]:
    """Reduce a polygon to four perimeter-ordered corners."""
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 2)
    if len(pts) != 4:
        pts = cv2.boxPoints(cv2.minAreaRect(pts))
    return [(float(x), float(y)) for x, y in pts]


def scan_pyzbar(gray: np.ndarray) -> Localized | None:
    if not _HAS_PYZBAR:
        return None
    results = pyzbar_decode(gray, symbols=[ZBarSymbol.QRCODE])
    if not results:
        return None
    first = results[0]
    corners = _quad([(p.x, p.y) for p in first.polygon]) if first.polygon else None
    return Localized(data=first.data, corners=corners, decoder="pyzbar/zbar")


def scan_opencv(gray: np.ndarray) -> Localized | None:
    detector = cv2.QRCodeDetector()
    text, points, _ = detector.detectAndDecode(gray)
    if not text:
        return None
    corners = _quad(points) if points is not None else None
    return Localized(data=text.encode("utf-8"), corners=corners, decoder="opencv")


SCANNERS = (scan_pyzbar, scan_opencv)


class Decoder:
    """Side-effect free; safe to share across threads."""

    def __init__(self, max_dimension: int = 800, fetch_timeout: float = 10.0,
                 transport: httpx.BaseTransport | None = None):
        self.max_dimension = max_dimension
        self.fetch_timeout = fetch_timeout
        self.transport = transport

    def read_source(self, image_bytes: bytes | None = None, image_data: str | None = None,
                    image_url: str | None = None) -> bytes:
        """Resolve exactly one image source to raw bytes."""
        if image_bytes:
            return bytes(image_bytes)
        if image_data:
            return decode_base64_image(image_data)
        if image_url:
            return fetch_image(image_url, timeout=self.fetch_timeout, transport=self.transport)
        raise ValidationError("Either image bytes, image_data or image_url is required")

    def locate(self, gray: np.ndarray) -> Localized:
        for scanner in SCANNERS:
            found = scanner(gray)
            if found is not None:
                return found
        raise NoCodeFoundError("No QR code found in the image")

    @trace
    def decode(self, image_bytes: bytes) -> DecodedCode:
        start = time.perf_counter()
        gray = normalize(load_image(image_bytes), self.max_dimension)
        try:
            found = self.locate(gray)
        except NoCodeFoundError:
            audit("scan.no_code", logger=log, image_px=f"{gray.shape[1]}x{gray.shape[0]}")
            raise

        payload = parse_payload(found.data)
        canonical = canonicalize(payload)
        confidence = geometric_confidence(found.corners)
        elapsed = (time.perf_counter() - start) * 1000
        audit("scan.decoded", logger=log,
              decoder=found.decoder, kind=payload.kind, confidence=confidence,
              time_ms=round(elapsed, 1))
        return DecodedCode(
            payload=payload,
            text=found.data.decode("utf-8", errors="replace"),
            canonical=canonical,
            fingerprint=fingerprint(canonical),
            confidence=confidence,
            corners=found.corners,
            decoder=found.decoder,
            decode_time_ms=elapsed,
        )
