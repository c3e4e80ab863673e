"""Run reconciliation for one date and print the report JSON."""

import argparse
import json
import os
from datetime import date, datetime, timedelta, timezone

import httpx


def main() -> None:
    """CLI entrypoint for on-demand reconciliation."""

    yesterday = datetime.now(timezone.utc).date() - timedelta(days=1)
    parser = argparse.ArgumentParser(description="Trigger reconciliation for a UTC date.")
    parser.add_argument("--reconciliation-url", default="http://localhost:8005")
    parser.add_argument("--date", type=date.fromisoformat, default=yesterday)
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--mismatches-only", action="store_true")
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.reconciliation_url}/reconciliation/{args.date.isoformat()}",
        headers={"x-api-key": args.api_key},
        timeout=120.0,
    )
    resp.raise_for_status()
    report = resp.json()
    if args.mismatches_only:
        report = {"date": report["date"], "mismatches": report["mismatches"]}
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
