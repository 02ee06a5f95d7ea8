"""Shared fixtures for qrtrack tests."""

import io

import pytest
from PIL import Image

from qrtrack.cache import MemoryCache
from qrtrack.config import Settings
from qrtrack.hashing import fingerprint
from qrtrack.models import CodeRecord, RenderSettings
from qrtrack.service import CodeService
from qrtrack.store import RecordStore
from qrtrack.template import MemoryTemplateProvider, TemplateDescriptor

ASSET_PAYLOAD = {"assetId": "A1", "type": "bolt"}


def png_bytes(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def make_record(record_id: str = "QR_TEST0000000001", canonical: bytes = b'{"assetId":"A1"}',
                asset_id: str | None = "A1") -> CodeRecord:
    return CodeRecord(
        id=record_id,
        payload_canonical=canonical,
        fingerprint=fingerprint(canonical),
        render_settings=RenderSettings(size=400, error_correction="M", format="PNG",
                                       dark_color="#000000", light_color="#FFFFFF", margin=4),
        quality_score=0.67,
        raster=b"\x89PNG-placeholder",
        asset_id=asset_id,
    )


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def store():
    return RecordStore()


@pytest.fixture
def templates():
    return MemoryTemplateProvider([
        TemplateDescriptor(
            template_id="framed",
            version=2,
            display_name="Framed label",
            custom_design=True,
            padding=20,
            border=True,
            border_width=3,
            show_text=True,
            text_content="TRACK ASSET",
        ),
        TemplateDescriptor(template_id="rugged", error_correction="H", size=300),
    ])


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def service(store, templates, settings, cache):
    return CodeService(store, templates, settings=settings, cache=cache)


@pytest.fixture
def blank_png():
    return png_bytes(Image.new("RGB", (400, 400), "white"))
