"""Templates: read-only appearance descriptors, their providers, and the raster composer."""

import json
import threading
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from pathlib import Path

from PIL import Image, ImageDraw, ImageFont

from qrtrack.logging import audit, get_logger, trace

log = get_logger("template")


@dataclass(frozen=True)
class TemplateDescriptor:
    """Appearance settings owned by the template-management side.

    `size`, `error_correction`, `dark_color`, `light_color` and `margin` are
    defaults for the encoder (None = no opinion). The remaining fields only
    matter when `custom_design` is set and drive the composer.
    """

    template_id: str
    version: int = 1
    display_name: str = ""

    size: int | None = None
    error_correction: str | None = None
    dark_color: str | None = None
    light_color: str | None = None
    margin: int | None = None

    custom_design: bool = False
    padding: int = 20
    background_color: str = "#FFFFFF"
    border: bool = False
    border_color: str = "#000000"
    border_width: int = 2
    show_text: bool = False
    text_content: str = ""
    text_color: str = "#000000"
    text_size: int = 16
    text_font: str | None = None
    text_height: int = 60
    text_margin: int = 20

    @classmethod
    def from_dict(cls, data: dict) -> "TemplateDescriptor":
        """Build from a stored document; `settings` may be nested or flattened."""
        merged = dict(data.get("settings") or {})
        merged.update({k: v for k, v in data.items() if k != "settings"})
        if "id" in merged and "template_id" not in merged:
            merged["template_id"] = merged.pop("id")
        color = merged.pop("color", None)
        if isinstance(color, dict):
            merged.setdefault("dark_color", color.get("dark"))
            merged.setdefault("light_color", color.get("light"))
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in merged.items() if k in known})

    @property
    def label(self) -> str:
        return self.display_name or self.template_id


class MemoryTemplateProvider:
    """Template provider over an in-process mapping, with usage counters.

    Thread-safe. Usage counters belong to the provider, not to the encoder.
    """

    def __init__(self, templates: list[TemplateDescriptor] | None = None):
        self._lock = threading.Lock()
        self._templates = {t.template_id: t for t in (templates or [])}
        self._usage: dict[str, dict] = {}

    def add(self, template: TemplateDescriptor):
        with self._lock:
            self._templates[template.template_id] = template

    def resolve(self, template_id: str) -> TemplateDescriptor | None:
        return self._templates.get(template_id)

    def record_usage(self, template_id: str):
        with self._lock:
            usage = self._usage.setdefault(template_id, {"usage_count": 0, "last_used": None})
            usage["usage_count"] += 1
            usage["last_used"] = datetime.now(timezone.utc)

    def usage(self, template_id: str) -> dict:
        with self._lock:
            return dict(self._usage.get(template_id, {"usage_count": 0, "last_used": None}))


def load_templates(path: str) -> MemoryTemplateProvider:
    """Load templates from a JSON file holding a list of template documents."""
    with open(Path(path)) as f:
        documents = json.load(f)
    templates = [TemplateDescriptor.from_dict(doc) for doc in documents]
    log.info("Loaded %d templates from %s", len(templates), path)
    return MemoryTemplateProvider(templates)


def _load_font(template: TemplateDescriptor):
    if template.text_font:
        try:
            return ImageFont.truetype(template.text_font, template.text_size)
        except OSError:
            log.debug("font %s unavailable, using default", template.text_font)
    return ImageFont.load_default(size=template.text_size)


@trace
def compose(base: Image.Image, template: TemplateDescriptor) -> Image.Image:
    """Place the base code on a decorated canvas: background, border and caption.

    The code is pasted unscaled, so its modules stay pixel-exact.
    """
    width, height = base.size
    pad = max(0, template.padding)
    caption = template.text_content if template.show_text and template.text_content else ""
    canvas_w = width + 2 * pad
    canvas_h = height + 2 * pad + (template.text_height if caption else 0)

    canvas = Image.new("RGB", (canvas_w, canvas_h), template.background_color)
    canvas.paste(base.convert("RGB"), (pad, pad))
    draw = ImageDraw.Draw(canvas)

    if template.border and template.border_width > 0:
        draw.rectangle(
            [0, 0, canvas_w - 1, canvas_h - 1],
            outline=template.border_color,
            width=template.border_width,
        )

    if caption:
        text_y = pad + height + template.text_margin
        draw.text(
            (canvas_w // 2, text_y),
            caption,
            fill=template.text_color,
            font=_load_font(template),
            anchor="mt",
        )

    audit("template.composed", logger=log,
          template=template.template_id, version=template.version,
          canvas=f"{canvas_w}x{canvas_h}", caption=bool(caption))
    return canvas
