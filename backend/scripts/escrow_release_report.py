#!/usr/bin/env python3
import argparse
import json
import sys
from collections import Counter
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from camarket.models import Payment  # noqa: E402
from camarket.services.coupon_ledger import CouponLedger  # noqa: E402
from camarket.services.database import Database  # noqa: E402
from camarket.services.settlement_engine import PaymentSettlementEngine  # noqa: E402
from camarket.settings import DB_PATH  # noqa: E402


def build_report(payments: List[Payment]) -> Dict[str, Any]:
    per_payee: Counter[str] = Counter()
    totals: Dict[str, Decimal] = {}
    for payment in payments:
        per_payee[payment.payee_id or "unassigned"] += 1
        payout = payment.net_amount if payment.net_amount is not None else payment.amount
        totals[payment.currency] = totals.get(payment.currency, Decimal("0.00")) + payout

    return {
        "due_releases": len(payments),
        "payees": dict(per_payee),
        "payout_totals": {currency: str(amount) for currency, amount in sorted(totals.items())},
        "payments": [
            {
                "payment_id": payment.id,
                "service_request_id": payment.service_request_id,
                "payee_id": payment.payee_id,
                "release_date": payment.escrow_release_date,
            }
            for payment in payments
        ],
    }


def print_human(report: Dict[str, Any]) -> None:
    print(f"Due escrow releases: {report['due_releases']}")
    print("Payout totals:")
    for currency, amount in report["payout_totals"].items():
        print(f"  - {currency}: {amount}")
    print("Releases per provider:")
    for payee, count in sorted(report["payees"].items(), key=lambda x: x[1], reverse=True):
        print(f"  - {payee}: {count}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="List escrowed service fees whose release date has passed.")
    parser.add_argument("--db", default=DB_PATH, help="Path to the marketplace sqlite database.")
    parser.add_argument("--as-of", default=None, help="ISO-8601 cutoff; defaults to now.")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON summary.")
    args = parser.parse_args(argv)

    database = Database(db_path=args.db)
    engine = PaymentSettlementEngine(database=database, coupons=CouponLedger(database=database))
    report = build_report(engine.due_escrow_releases(as_of=args.as_of))
    print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
