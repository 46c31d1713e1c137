from dotenv import load_dotenv
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

load_dotenv(".env")

import asyncio
import logging

from metering.core.services import build_services
from metering.core.settings import settings


async def _run() -> None:
    services = build_services(settings)
    try:
        report = services.maintenance.renew_due_accounts()
    finally:
        await services.aclose()
    print(f"renewed={len(report.renewed)} credits_granted={report.credits_granted}")


def main() -> None:
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    asyncio.run(_run())


if __name__ == "__main__":
    main()
