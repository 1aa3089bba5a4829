"""
``bundles`` -- operator command line for the bundle pipeline.

Commands:
    init-db                     create the schema
    admit FILE                  admit a CSV / JSON / JSON Lines batch and drive it
    callback --token ...        play the signing provider's callback
    sweep                       run one expiry/recovery sweep
    status BUNDLE_ID            show a bundle, its vehicles and transitions
    retry-deliveries BUNDLE_ID  re-deliver the failed vehicles of a PARTIAL_FAILED bundle

Uses loopback collaborators, so the whole lifecycle can be smoke-run
locally.  Bundles are driven inline on the calling thread.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Sequence

from bundle_config import get_active_settings
from bundle_kernel.exceptions import BundleKernelError
from bundle_kernel.logging_config import configure_logging, get_logger

from bundle_batch.callbacks import handle_signing_callback
from bundle_batch.collaborators.loopback import LoopbackSigner, loopback_collaborators
from bundle_batch.container import BundleServices

logger = get_logger("batch.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bundles",
        description="Drive dealer contract bundles through render, sign and delivery.",
    )
    parser.add_argument("--config", help="YAML settings file overlaid on the packaged defaults")
    parser.add_argument("--database-url", help="Override database_url from the settings")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema")

    admit = sub.add_parser("admit", help="Admit a batch file and drive its bundles")
    admit.add_argument("file", help="CSV, JSON or JSON Lines file")
    admit.add_argument("--format", choices=("csv", "json", "jsonl"), help="Override format detection")
    admit.add_argument("--json-path", help="Dotted path to the row array inside a JSON document")

    callback = sub.add_parser("callback", help="Deliver a signing callback")
    callback.add_argument("--token", required=True)
    callback.add_argument("--outcome", required=True, choices=("SUCCESS", "FAILURE"))
    callback.add_argument("--artifact-ref")
    callback.add_argument("--log-ref")
    callback.add_argument("--bundle-id")

    sub.add_parser("sweep", help="Run one expiry/recovery sweep")

    status = sub.add_parser("status", help="Show a bundle")
    status.add_argument("bundle_id")

    retry = sub.add_parser("retry-deliveries", help="Retry failed deliveries of a bundle")
    retry.add_argument("bundle_id")

    return parser


def _dump(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _cmd_init_db(services: BundleServices, args: argparse.Namespace) -> int:
    services.init_schema()
    print("schema ready")
    return 0


def _cmd_admit(services: BundleServices, args: argparse.Namespace) -> int:
    options = {"json_path": args.json_path} if args.json_path else None
    report = services.admission_gate.admit_file(args.file, fmt=args.format, options=options)
    print(
        f"rows={report.rows_read} admitted={report.admitted} "
        f"duplicates={report.duplicates} rejected={report.rejected_count}"
    )
    for rejected in report.rejected:
        print(f"  row {rejected.source_row}: {', '.join(e.message for e in rejected.errors)}")

    signer = services.collaborators.signer
    for bundle_id in report.bundle_ids:
        bundle = services.store.require_bundle(bundle_id)
        line = f"{bundle_id}: {bundle.status.value}"
        if isinstance(signer, LoopbackSigner) and bundle.is_waiting and bundle_id in signer.issued:
            line += f"  callback token: {signer.issued[bundle_id]}"
        print(line)
    return 1 if report.start_failures else 0


def _cmd_callback(services: BundleServices, args: argparse.Namespace) -> int:
    response = handle_signing_callback(
        services.continuation,
        {
            "token": args.token,
            "outcome": args.outcome,
            "artifact_ref": args.artifact_ref,
            "log_ref": args.log_ref,
            "bundle_id": args.bundle_id,
        },
    )
    _dump({
        "status_code": response.status_code,
        "result": response.result.value if response.result else None,
        "bundle_id": response.bundle_id,
        "message": response.message,
    })
    if response.bundle_id:
        print(f"{response.bundle_id}: {services.store.require_bundle(response.bundle_id).status.value}")
    return 0 if response.status_code == 200 else 1


def _cmd_sweep(services: BundleServices, args: argparse.Namespace) -> int:
    report = services.sweeper.tick()
    _dump({
        "expired": list(report.expired),
        "redispatched": list(report.redispatched),
        "errors": list(report.errors),
    })
    return 1 if report.errors else 0


def _cmd_status(services: BundleServices, args: argparse.Namespace) -> int:
    bundle = services.store.require_bundle(args.bundle_id)
    _dump({
        "bundle_id": bundle.bundle_id,
        "status": bundle.status.value,
        "vehicle_count": bundle.vehicle_count,
        "unsigned_artifact_ref": bundle.unsigned_artifact_ref,
        "signed_artifact_ref": bundle.signed_artifact_ref,
        "sign_request_id": bundle.sign_request_id,
        "resume_expires_at": bundle.resume_expires_at,
        "error_code": bundle.error_code,
        "error_detail": bundle.error_detail,
        "vehicles": [
            {
                "contract_id": v.contract_id,
                "sequence_no": v.sequence_no,
                "status": v.status.value,
                "error_code": v.error_code,
            }
            for v in services.store.list_vehicles(bundle.bundle_id)
        ],
        "transitions": [
            f"{t.from_status.value} -> {t.to_status.value}"
            for t in services.store.list_transitions(bundle.bundle_id)
        ],
    })
    return 0


def _cmd_retry_deliveries(services: BundleServices, args: argparse.Namespace) -> int:
    result = services.orchestrator.retry_failed_deliveries(args.bundle_id)
    print(f"{result.bundle_id}: {result.status.value}")
    for contract_id in result.failed_contract_ids:
        print(f"  still failed: {contract_id}")
    return 0 if not result.failed_contract_ids else 1


_COMMANDS = {
    "init-db": _cmd_init_db,
    "admit": _cmd_admit,
    "callback": _cmd_callback,
    "sweep": _cmd_sweep,
    "status": _cmd_status,
    "retry-deliveries": _cmd_retry_deliveries,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {"database_url": args.database_url} if args.database_url else None
    try:
        settings = get_active_settings(args.config, overrides=overrides)
    except (FileNotFoundError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2

    configure_logging(level=settings.log_level)
    services = BundleServices.from_settings(settings, loopback_collaborators(), inline=True)
    try:
        if args.command != "init-db":
            services.init_schema()
        return _COMMANDS[args.command](services, args)
    except BundleKernelError as exc:
        logger.warning("cli_command_failed", extra={"command": args.command, "error_code": exc.code})
        print(f"ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
