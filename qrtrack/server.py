"""Thin HTTP adapter over CodeService. Authentication is handled upstream."""

from datetime import datetime, timezone

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from qrtrack.encoder import GenerationRequest
from qrtrack.errors import CodeNotFoundError, QRTrackError, ValidationError
from qrtrack.logging import audit, get_logger
from qrtrack.service import CodeService, VerificationRequest

log = get_logger("server")

_TRUE = ("1", "true", "yes")


def _flag(name: str) -> bool:
    return request.args.get(name, "false").lower() in _TRUE


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _parse_time(name: str) -> datetime | None:
    value = request.args.get(name)
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(f"{name} must be an ISO-8601 timestamp") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def create_app(service: CodeService) -> Flask:
    app = Flask(__name__)

    @app.errorhandler(QRTrackError)
    def handle_error(error: QRTrackError):
        audit("api.error", logger=log, path=request.path, kind=error.kind)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return jsonify({"success": False, "message": error.description,
                            "error_code": error.name.upper().replace(" ", "_")}), error.code
        log.exception("unhandled error on %s", request.path)
        return jsonify({"success": False, "message": "Internal server error",
                        "error_code": "INTERNAL_ERROR"}), 500

    @app.route("/health")
    def health():
        return jsonify({"status": "healthy", "service": "qrtrack",
                        "timestamp": datetime.now(timezone.utc).isoformat()})

    @app.route("/api/qr/generate", methods=["POST"])
    def generate():
        body = _json_body()
        result = service.generate(
            GenerationRequest(
                payload=body.get("data"),
                template_id=body.get("template_id"),
                size=body.get("size"),
                error_correction=body.get("error_correction"),
                format=body.get("format"),
                overrides=body.get("custom_settings") or {},
            ),
            created_by=request.headers.get("X-Verifier-Id"),
        )
        return jsonify({"success": True, "message": "QR Code generated successfully",
                        "data": result.to_dict()}), 201

    @app.route("/api/qr/scan", methods=["POST"])
    def scan():
        body = _json_body()
        result = service.verify(VerificationRequest(
            image_data=body.get("image_data"),
            image_url=body.get("image_url"),
            event_id=body.get("scan_id"),
            verifier_id=request.headers.get("X-Verifier-Id"),
            location=body.get("location"),
            device_info=request.headers.get("User-Agent"),
            context=body.get("scan_context") or {},
            auth_token=request.headers.get("Authorization"),
        ))
        return jsonify({"success": True, "message": "QR Code scanned successfully",
                        "data": result.to_dict()})

    @app.route("/api/qr/<code_id>")
    def get_code(code_id):
        view = service.get_code(code_id, include_scans=_flag("include_scans"),
                                include_analytics=_flag("include_analytics"))
        return jsonify({"success": True, "data": view})

    @app.route("/api/qr/<code_id>/analytics")
    def analytics(code_id):
        if service.store.get(code_id) is None:
            raise CodeNotFoundError(f"QR code {code_id} not found", details={"qr_id": code_id})
        report = service.analytics.summarize(code_id, since=_parse_time("since"), until=_parse_time("until"))
        return jsonify({"success": True, "data": report.to_dict()})

    @app.route("/api/analytics/failures")
    def failures():
        return jsonify({"success": True,
                        "data": service.analytics.failure_breakdown(since=_parse_time("since"))})

    return app
