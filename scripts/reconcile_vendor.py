"""Run a TorBox reconciliation from the command line and print the report as JSON.

    python scripts/reconcile_vendor.py [--fail-on-drift]
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app is in path
sys.path.append(os.getcwd())

from app.core.container import build_container
from app.core.instrumentation import setup_logging
from config.settings import get_settings


async def run(fail_on_drift: bool) -> int:
    settings = get_settings()
    if not settings.torbox_configured:
        print("TORBOX_VENDOR_API_KEY is not set.", file=sys.stderr)
        return 2

    container = build_container(settings)
    try:
        container.db.create_all()
        report = await container.provisioning.reconcile()
    finally:
        await container.aclose()

    print(json.dumps({"checked": report.checked, "drifts": report.drifts}, indent=2))
    if fail_on_drift and report.has_drift:
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Compare local TorBox links with the vendor's user list.")
    parser.add_argument("--fail-on-drift", action="store_true", help="Exit with status 1 when drift is found")
    args = parser.parse_args(argv)
    setup_logging(get_settings().log_level)
    return asyncio.run(run(args.fail_on_drift))


if __name__ == "__main__":
    sys.exit(main())
