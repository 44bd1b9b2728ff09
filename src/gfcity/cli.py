"""
Garbage Free City CLI entrypoint.

This CLI is intended for local runs and demos:
- `serve`: run the HTTP API with uvicorn.
- `nearest`: rank seeded collectors around a point.
- `demo`: walk one report from submission to collection, fully offline.
"""

from __future__ import annotations

import argparse
import json

from gfcity.config.settings import Settings, get_settings
from gfcity.core.logging import configure_logging
from gfcity.core.time import to_local
from gfcity.domain.models import Location, Payment, PaymentProviderName, UserRole
from gfcity.notify.dispatcher import build_dispatcher
from gfcity.payments.gateways import build_gateways, new_reference
from gfcity.payments.reconciliation import format_amount
from gfcity.ranking.nearest import find_nearest_collectors
from gfcity.service.orchestrator import GarbageService
from gfcity.storage.memory import InMemoryStore
from gfcity.storage.seed import load_users, seed_store

DEFAULT_SEED = "data/seed/kampala.json"


class _ConsoleSender:
    """Prints SMS messages instead of sending them."""

    def send(self, contact: str, message: str) -> None:
        print(f"  [sms -> {contact}] {message}")


def _new_store(settings: Settings) -> InMemoryStore:
    return InMemoryStore(
        cell_size_m=settings.ranking.index_cell_size_m,
        lat0_deg=settings.ranking.index_lat0_deg,
    )


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("gfcity.api.app:app", host=args.host, port=int(args.port), reload=bool(args.reload))
    return 0


def _cmd_nearest(args: argparse.Namespace) -> int:
    """Handle the `nearest` subcommand."""
    settings = get_settings()
    store = _new_store(settings)
    seed_store(store, load_users(args.seed))

    origin = Location(lat=float(args.lat), lon=float(args.lon))
    ranked = list(find_nearest_collectors(store, origin, settings=settings.ranking, limit=args.limit))

    if args.json:
        rows = [
            {"id": str(rc.collector.id), "full_name": rc.collector.full_name, "distance_m": round(rc.distance_m, 1)}
            for rc in ranked
        ]
        print(json.dumps(rows, ensure_ascii=False, indent=2))
        return 0

    if not ranked:
        print("No collectors available.")
        return 0
    print(f"Nearest collectors to ({origin.lat:.4f}, {origin.lon:.4f}):")
    for i, rc in enumerate(ranked, start=1):
        c = rc.collector
        print(f"{i:>2}. {c.full_name} ({c.phone_number})  {rc.distance_m / 1000:.2f} km")
    return 0


def _demo_settings(settings: Settings) -> Settings:
    flutterwave = settings.payments.flutterwave.model_copy(update={"secret_hash": "demo-hash"})
    payments = settings.payments.model_copy(update={"flutterwave": flutterwave})
    notifications = settings.notifications.model_copy(update={"enabled": True, "max_workers": 0})
    return settings.model_copy(update={"payments": payments, "notifications": notifications})


def _cmd_demo(args: argparse.Namespace) -> int:
    settings = _demo_settings(get_settings())
    store = _new_store(settings)
    service = GarbageService(
        store,
        build_gateways(settings),
        build_dispatcher(settings, sender=_ConsoleSender()),
        settings=settings,
    )
    users = seed_store(store, load_users(args.seed))
    resident = next(u for u in users if u.role == UserRole.RESIDENT)

    print(f"1. {resident.full_name} reports garbage at home")
    report = service.submit_report(resident, resident.home_location, "Overflowing skip near the market", "medium")
    print(f"   report {report.id}: {report.status.value}, fee {report.currency} {format_amount(report.fee_amount)}")

    # The charge itself needs live credentials; record it as if initiated and drive the webhook.
    payment = store.add_payment(
        Payment(
            report_id=report.id,
            resident_id=resident.id,
            reference=new_reference(PaymentProviderName.FLUTTERWAVE, prefix=settings.payments.reference_prefix),
            amount=report.fee_amount,
            currency=report.currency,
            phone_number=resident.phone_number,
        )
    )
    print(f"2. Payment {payment.reference} initiated")

    payload = {"event": "charge.completed", "data": {"tx_ref": payment.reference.value, "status": "successful", "id": 1}}
    headers = {"verif-hash": "demo-hash"}
    for attempt in ("delivery", "redelivery"):
        ack = service.handle_gateway_callback(PaymentProviderName.FLUTTERWAVE, payload, headers)
        print(f"3. Webhook {attempt}: {ack.outcome.value if ack.outcome else '-'} ({ack.message})")

    ranked = list(service.find_nearest_collectors(report.id))
    print("4. Nearest collectors:")
    for rc in ranked:
        print(f"   - {rc.collector.full_name}: {rc.distance_m / 1000:.2f} km")
    if not ranked:
        print("   none available; stopping.")
        return 1

    collector = ranked[0].collector
    claimed = service.claim_report(collector, report.id)
    print(f"5. {collector.full_name} claimed the report: {claimed.status.value}")

    event = service.verify_collection(collector, report.id, report.location, report.verification_code)
    final = service.get_report(report.id)
    print(
        f"6. Collection verified {event.distance_from_report_m:.0f} m from the report; "
        f"report is {final.status.value} at {to_local(final.completed_at, settings.app.timezone):%H:%M %Z}"
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the gfcity CLI."""
    parser = argparse.ArgumentParser(prog="gfcity")
    sub = parser.add_subparsers(dest="command", required=True)

    srv = sub.add_parser("serve", help="Run the HTTP API.")
    srv.add_argument("--host", default="127.0.0.1")
    srv.add_argument("--port", type=int, default=8000)
    srv.add_argument("--reload", action="store_true")
    srv.set_defaults(func=_cmd_serve)

    near = sub.add_parser("nearest", help="Rank seeded collectors around a location.")
    near.add_argument("--lat", required=True, type=float)
    near.add_argument("--lon", required=True, type=float)
    near.add_argument("--limit", type=int, default=None)
    near.add_argument("--seed", default=DEFAULT_SEED, help="Seed JSON with users (default: %(default)s)")
    near.add_argument("--json", action="store_true", help="Print JSON output.")
    near.set_defaults(func=_cmd_nearest)

    demo = sub.add_parser("demo", help="Run an offline report-to-collection walkthrough.")
    demo.add_argument("--seed", default=DEFAULT_SEED, help="Seed JSON with users (default: %(default)s)")
    demo.set_defaults(func=_cmd_demo)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI main function (returns a process exit code)."""
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
