# scripts/issue_code.py
import argparse
import asyncio

from tampinha.config import Settings, configure_logging
from tampinha.main import build_services


async def _issue(args) -> None:
    settings = Settings.from_env()
    configure_logging(settings)
    services = build_services(settings)
    try:
        issued = await services.issuer.issue_code(
            args.venue_name,
            args.venue_id,
            points_value=args.points,
            expiry_hours=args.expiry_hours,
            never_expires=args.never_expires,
        )
    finally:
        await services.cache.close()
        services.engine.dispose()

    print(issued.metadata.code_id)
    print(issued.payload)  # encode this string into the printed QR image


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue a scannable points code for a venue")
    parser.add_argument("--venue-name", required=True)
    parser.add_argument("--venue-id", required=True)
    parser.add_argument("--points", type=int, default=1)
    parser.add_argument("--expiry-hours", type=int, default=None)
    parser.add_argument("--never-expires", action="store_true")
    args = parser.parse_args()
    asyncio.run(_issue(args))


if __name__ == "__main__":
    main()
