"""qrtrack CLI: issue, verify and inspect tracked codes against a JSON-file store."""

import argparse
import json
import sys
from pathlib import Path

from qrtrack.config import get_settings
from qrtrack.errors import QRTrackError
from qrtrack.logging import audit, get_logger, setup_logging

log = get_logger("cli")

DEFAULT_STORE = "qrtrack_db.json"


def _parse_payload(args) -> dict:
    """Payload from a JSON object string, or from key=value pairs."""
    if len(args.payload) == 1 and args.payload[0].lstrip().startswith("{"):
        return json.loads(args.payload[0])
    payload = {}
    for item in args.payload:
        key, sep, value = item.partition("=")
        if not sep:
            raise SystemExit(f"payload items must be key=value, got {item!r}")
        payload[key] = value
    return payload


def _service(args):
    from qrtrack.service import CodeService

    settings = get_settings().model_copy(update={
        "store_path": args.store or get_settings().store_path or DEFAULT_STORE,
        "templates_path": args.templates or get_settings().templates_path,
    })
    return CodeService.from_settings(settings)


def cmd_generate(args):
    """Generate a code and store its record."""
    from qrtrack.encoder import GenerationRequest

    service = _service(args)
    result = service.generate(GenerationRequest(
        payload=_parse_payload(args),
        template_id=args.template,
        size=args.size,
        error_correction=args.ecc,
        format=args.format,
    ))

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(result.image_bytes)

    settings = result.resolved_settings
    print(f"Generated: {result.code_id} -> {output} ({settings['size']}x{settings['size']} {result.format})")
    print(f"  ECC:         {settings['error_correction']}"
          f"{' (auto-raised)' if result.optimization_applied else ''}")
    print(f"  Quality:     {result.quality_score:.2f}")
    print(f"  Fingerprint: {result.fingerprint}")
    print(f"  Template:    {result.template_used}")
    for warning in result.warnings:
        print(f"  Warning:     {warning}")


def cmd_verify(args):
    """Verify a captured image and record the scan."""
    from qrtrack.service import VerificationRequest

    service = _service(args)
    result = service.verify(VerificationRequest(
        image_bytes=Path(args.image).read_bytes(),
        event_id=args.scan_id,
        verifier_id=args.verifier,
        device_info=args.device,
    ))

    status = "RESOLVED" if result.resolved else "UNRESOLVED"
    print(f"  [{status}] scan={result.scan_id} quality={result.scan_quality:.2f}"
          f"{' (replayed)' if result.replayed else ''}")
    print(f"  Payload: {json.dumps(result.decoded_payload.to_json(), sort_keys=True)}")
    if result.matched_record is not None:
        record = result.matched_record
        print(f"  Record:  {record.id} scans={record.scan_count} "
              f"unique_verifiers={record.unique_verifier_count}")
    sys.exit(0 if result.resolved else 1)


def cmd_show(args):
    """Print a stored code record."""
    service = _service(args)
    view = service.get_code(args.code_id, include_scans=args.scans, include_analytics=args.analytics)
    print(json.dumps(view, indent=2, default=str))


def cmd_analytics(args):
    """Print usage analytics for one code, or the failure breakdown."""
    service = _service(args)
    if args.code_id:
        report = service.analytics.summarize(args.code_id)
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(json.dumps(service.analytics.failure_breakdown(), indent=2))


def cmd_serve(args):
    """Start the HTTP API."""
    from qrtrack.server import create_app

    app = create_app(_service(args))
    settings = get_settings()
    port = args.port or settings.api_port
    print(f"Starting qrtrack API on http://{settings.api_host}:{port}")
    app.run(host=settings.api_host, port=port, debug=args.debug)


def main():
    parser = argparse.ArgumentParser(prog="qrtrack", description="Issue, verify and track asset QR codes")

    parser.add_argument("-V", "--verbose", action="store_true", help="Enable DEBUG-level logging")
    parser.add_argument("--log-file", default=None, help="Write JSON logs to file")
    parser.add_argument("--store", default=None, help=f"JSON store path (default {DEFAULT_STORE})")
    parser.add_argument("--templates", default=None, help="JSON file with template documents")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- generate ---
    p_gen = subparsers.add_parser("generate", help="Generate a code")
    p_gen.add_argument("payload", nargs="+", help="JSON object, or key=value pairs (must include assetId)")
    p_gen.add_argument("-o", "--output", default="output/code.png", help="Output file path")
    p_gen.add_argument("-t", "--template", default=None, help="Template id")
    p_gen.add_argument("-s", "--size", type=int, default=None, help="Image size in px (64-4096)")
    p_gen.add_argument("-e", "--ecc", default=None, choices=["L", "M", "Q", "H"], help="Error correction level")
    p_gen.add_argument("-f", "--format", default=None, choices=["PNG", "JPEG", "BMP"], help="Image format")

    # --- verify ---
    p_ver = subparsers.add_parser("verify", help="Verify a captured image")
    p_ver.add_argument("image", help="Path to image")
    p_ver.add_argument("--verifier", default=None, help="Verifier identity")
    p_ver.add_argument("--device", default=None, help="Device info / user agent")
    p_ver.add_argument("--scan-id", default=None, help="Scan id (re-using one makes the scan a replay)")

    # --- show ---
    p_show = subparsers.add_parser("show", help="Show a stored code")
    p_show.add_argument("code_id", help="Code id (QR_...)")
    p_show.add_argument("--scans", action="store_true", help="Include recent scans")
    p_show.add_argument("--analytics", action="store_true", help="Include analytics")

    # --- analytics ---
    p_an = subparsers.add_parser("analytics", help="Usage analytics")
    p_an.add_argument("code_id", nargs="?", default=None, help="Code id; omit for the failure breakdown")

    # --- serve ---
    p_serve = subparsers.add_parser("serve", help="Start the HTTP API")
    p_serve.add_argument("--port", type=int, default=None, help="Port to listen on")
    p_serve.add_argument("--debug", action="store_true", help="Enable debug mode")

    args = parser.parse_args()

    settings = get_settings()
    level = "DEBUG" if args.verbose else settings.log_level
    setup_logging(level=level, log_file=args.log_file or settings.log_file, json_format=settings.log_json)
    audit("cli.start", logger=log, command=args.command, verbose=args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    commands = {
        "generate": cmd_generate,
        "verify": cmd_verify,
        "show": cmd_show,
        "analytics": cmd_analytics,
        "serve": cmd_serve,
    }
    try:
        commands[args.command](args)
    except QRTrackError as e:
        print(f"Error [{e.kind}]: {e.message}", file=sys.stderr)
        sys.exit(2)
    audit("cli.done", logger=log, command=args.command)


if __name__ == "__main__":
    main()
