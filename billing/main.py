from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from billing.config import Settings, load_dotenv
from billing.errors import EngineError
from billing.logger import configure_logging
from billing.metrics import JsonlMetricsSink, MetricsCollector
from billing.service import build_service
from billing.totals import compute_totals

logger = logging.getLogger(__name__)


def _parse_now(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def run_sweep(settings: Settings, now: datetime) -> dict[str, int]:
    """Expire lapsed estimates and flag past-due invoices."""
    metrics = MetricsCollector()
    service = build_service(settings, metrics=metrics)
    expired = service.expire_estimates(now)
    overdue = service.flag_overdue_invoices(now)
    JsonlMetricsSink(settings.metrics_path).flush(metrics, stage="sweep")
    summary = {"estimates_expired": len(expired), "invoices_overdue": len(overdue)}
    logger.info(
        "Sweep summary estimates_expired=%d invoices_overdue=%d",
        summary["estimates_expired"],
        summary["invoices_overdue"],
    )
    return summary


def run_totals(settings: Settings, path: Path) -> dict[str, str]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    totals = compute_totals(
        payload.get("line_items") or [],
        payload.get("tax_rate", settings.default_tax_rate),
        payload.get("discount", "0"),
        rounding=settings.rounding_mode,
        discount_policy=settings.discount_policy,
    )
    return totals.model_dump(mode="json")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Trades Billing Engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    sweep = subparsers.add_parser("sweep", help="Expire estimates and flag overdue invoices")
    sweep.add_argument("--now", default=None, help="ISO timestamp to sweep as of (default: now)")

    totals = subparsers.add_parser("totals", help="Preview totals for a JSON document")
    totals.add_argument("--file", required=True, type=Path)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    if args.command == "serve":
        from billing.api_main import main as serve_main

        serve_main(host=args.host, port=args.port)
        return 0
    try:
        if args.command == "sweep":
            run_sweep(settings, _parse_now(args.now))
            return 0
        if args.command == "totals":
            print(json.dumps(run_totals(settings, args.file), indent=2))
            return 0
    except EngineError as exc:
        logger.error("%s failed: %s", args.command, exc, extra={"outcome": exc.code})
        return 2
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
