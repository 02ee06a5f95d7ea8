"""Encoder: payload + template + overrides -> raster, canonical bytes, fingerprint, quality.

Pipeline: validate payload -> resolve template -> resolve settings -> render ->
compose template (optional, degrades to the base raster) -> score -> fingerprint.
Persistence is the caller's job.
"""

from dataclasses import dataclass, field

from PIL import ImageColor

from qrtrack.config import Settings
from qrtrack.errors import TemplateNotFoundError, ValidationError
from qrtrack.generator import (
    ECC_NAMES,
    MAX_SIZE,
    MIN_SIZE,
    SUPPORTED_FORMATS,
    auto_level,
    check_capacity,
    render_code,
    to_bytes,
)
from qrtrack.hashing import fingerprint
from qrtrack.logging import audit, degraded, get_logger, trace
from qrtrack.models import RenderSettings
from qrtrack.payload import AssetPayload, canonicalize, for_generation
from qrtrack.quality import score_quality
from qrtrack.template import TemplateDescriptor, compose

log = get_logger("encoder")

OVERRIDE_KEYS = ("size", "error_correction", "format", "dark_color", "light_color", "margin")
TEMPLATE_KEYS = ("size", "error_correction", "dark_color", "light_color", "margin")
MAX_MARGIN = 16
_FORMAT_ALIASES = {"JPG": "JPEG"}


@dataclass
class GenerationRequest:
    payload: dict
    template_id: str | None = None
    size: int | None = None
    error_correction: str | None = None
    format: str | None = None
    overrides: dict = field(default_factory=dict)


@dataclass
class EncodedCode:
    payload: AssetPayload
    raster: bytes
    canonical: bytes
    fingerprint: str
    quality_score: float
    settings: RenderSettings
    template: TemplateDescriptor | None = None
    optimization_applied: bool = False
    warnings: list[str] = field(default_factory=list)


def _as_int(name: str, value) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer", details={name: value})
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be an integer", details={name: value}) from e


def _explicit_settings(request: GenerationRequest) -> dict:
    explicit = {
        "size": request.size,
        "error_correction": request.error_correction,
        "format": request.format,
    }
    overrides = dict(request.overrides or {})
    color = overrides.pop("color", None)
    if isinstance(color, dict):
        overrides.setdefault("dark_color", color.get("dark"))
        overrides.setdefault("light_color", color.get("light"))
    unknown = sorted(set(overrides) - set(OVERRIDE_KEYS))
    if unknown:
        raise ValidationError("Unsupported override settings", details={"unknown": unknown})
    explicit.update(overrides)
    return {k: v for k, v in explicit.items() if v is not None}


def _validate(merged: dict) -> dict:
    size = _as_int("size", merged["size"])
    if not MIN_SIZE <= size <= MAX_SIZE:
        raise ValidationError(f"size must be within [{MIN_SIZE}, {MAX_SIZE}] px", details={"size": size})

    ecc = str(merged["error_correction"]).upper()
    if ecc not in ECC_NAMES:
        raise ValidationError("error_correction must be one of L, M, Q, H",
                              details={"error_correction": merged["error_correction"]})

    fmt = str(merged["format"]).upper()
    fmt = _FORMAT_ALIASES.get(fmt, fmt)
    if fmt not in SUPPORTED_FORMATS:
        raise ValidationError(f"format must be one of {', '.join(SUPPORTED_FORMATS)}",
                              details={"format": merged["format"]})

    margin = _as_int("margin", merged["margin"])
    if not 0 <= margin <= MAX_MARGIN:
        raise ValidationError(f"margin must be within [0, {MAX_MARGIN}]", details={"margin": margin})

    colors = {}
    for key in ("dark_color", "light_color"):
        try:
            ImageColor.getrgb(merged[key])
        except (TypeError, ValueError, AttributeError) as e:
            raise ValidationError(f"{key} is not a valid color", details={key: merged[key]}) from e
        colors[key] = merged[key]

    return {"size": size, "error_correction": ecc, "format": fmt, "margin": margin, **colors}


def resolve_settings(
    request: GenerationRequest,
    template: TemplateDescriptor | None,
    defaults: Settings,
    payload_length: int,
) -> tuple[RenderSettings, bool]:
    """Merge explicit overrides > template defaults > system defaults.

    When no level was requested explicitly, the template/system level acts as a
    floor that auto-selection may raise for longer payloads. Returns the resolved
    settings and whether auto-selection changed the level.
    """
    system = {
        "size": defaults.default_size,
        "error_correction": defaults.default_error_correction,
        "format": defaults.default_format,
        "dark_color": defaults.default_dark_color,
        "light_color": defaults.default_light_color,
        "margin": defaults.default_margin,
    }
    from_template = {}
    if template is not None:
        from_template = {k: getattr(template, k) for k in TEMPLATE_KEYS if getattr(template, k) is not None}
    explicit = _explicit_settings(request)

    resolved = _validate({**system, **from_template, **explicit})
    optimized = False
    if "error_correction" not in explicit:
        floor = resolved["error_correction"]
        resolved["error_correction"] = auto_level(payload_length, floor)
        optimized = resolved["error_correction"] != floor
    return RenderSettings(**resolved), optimized


class Encoder:
    """Stateless apart from its collaborators; safe to share across threads."""

    def __init__(self, templates, settings: Settings):
        self.templates = templates
        self.settings = settings

    def _resolve_template(self, template_id: str | None) -> TemplateDescriptor | None:
        if not template_id:
            return None
        template = self.templates.resolve(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template {template_id} not found",
                                        details={"template_id": template_id})
        return template

    @trace
    def encode(self, request: GenerationRequest) -> EncodedCode:
        payload = for_generation(request.payload)
        canonical = canonicalize(payload)
        template = self._resolve_template(request.template_id)
        settings, optimized = resolve_settings(request, template, self.settings, len(canonical))
        check_capacity(len(canonical), settings.error_correction)

        base = render_code(
            canonical.decode("ascii"),
            size=settings.size,
            ecc=settings.error_correction,
            margin=settings.margin,
            dark_color=settings.dark_color,
            light_color=settings.light_color,
        )

        image = base
        warnings = []
        if template is not None and template.custom_design:
            try:
                image = compose(base, template)
            except Exception as e:
                warnings.append(f"template composition failed: {e}")
                degraded("template.compose_failed", logger=log,
                         template=template.template_id, error=str(e))

        raster = to_bytes(image, settings.format)
        quality = score_quality(image, fallback=self.settings.fallback_quality_score)
        digest = fingerprint(canonical)

        audit("code.encoded", logger=log,
              asset=payload.asset_id, fingerprint=digest[:16], bytes=len(canonical),
              ecc=settings.error_correction, optimized=optimized,
              template=template.template_id if template else None, quality=quality)
        return EncodedCode(
            payload=payload,
            raster=raster,
            canonical=canonical,
            fingerprint=digest,
            quality_score=quality,
            settings=settings,
            template=template,
            optimization_applied=optimized,
            warnings=warnings,
        )
