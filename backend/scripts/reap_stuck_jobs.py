from dotenv import load_dotenv
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

load_dotenv(".env")

import argparse
import asyncio
import logging

from metering.core.services import build_services
from metering.core.settings import settings


async def _run(timeout_minutes: int | None) -> int:
    services = build_services(settings)
    try:
        report = services.maintenance.reap_stuck_jobs(timeout_minutes=timeout_minutes)
    finally:
        await services.aclose()
    print(f"reaped={len(report.reaped)} resettled={len(report.resettled)} failed={len(report.failed)}")
    for job_id in report.reaped:
        print(f"  reaped {job_id}")
    return 1 if report.failed else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Fail jobs stuck in pending or processing and refund what they did not spend.")
    parser.add_argument("--timeout-minutes", type=int, default=None)
    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    sys.exit(asyncio.run(_run(args.timeout_minutes)))


if __name__ == "__main__":
    main()
