#!/usr/bin/env python3
"""
Run one presentation generation for a user from the command line.

Signs the user in (creating the default ledger document on first sight),
submits the topic, polls to a terminal outcome and prints it as JSON.

Usage:
  python scripts/generate_presentation.py --user-id demo-user --topic "History of flight"

Notes:
- Without GENERATOR_API_KEY the mock generator is used. GENERATOR_MOCK_MODE=true
  also mocks the credit endpoint and purchases; nothing leaves the machine.
- --id-token is only needed for live credit calls.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add repo root to sys.path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

logger = logging.getLogger(__name__)


async def run(user_id: str, topic: str, id_token: str) -> int:
    from slidegen.auth.identity import StaticIdentity
    from slidegen.config import get_settings
    from slidegen.session import AppSession

    settings = get_settings()

    async with AppSession(settings) as session:
        balance = await session.sign_in(StaticIdentity(user_id, id_token=id_token))
        logger.info(
            f"Signed in as {user_id}: {balance.free_units} free, "
            f"{balance.premium_units} premium"
        )

        outcome = await session.generate(topic)
        print(outcome.model_dump_json(indent=2))

        if outcome.ready:
            return 0
        logger.warning(f"Generation did not deliver: {outcome.message}")
        return 2


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate one presentation")
    parser.add_argument("--user-id", required=True, help="User to charge")
    parser.add_argument("--topic", required=True, help="Presentation topic / prompt")
    parser.add_argument(
        "--id-token",
        default="mock-id-token",
        help="Bearer credential for the credit endpoint (default: mock token)",
    )
    args = parser.parse_args()

    from slidegen.config import get_settings
    from slidegen.observability.logging import configure_logging

    settings = get_settings()
    configure_logging(
        log_level=settings.logging.level,
        json_output=settings.logging.json_output,
        colorized=settings.logging.colorized,
    )

    exit_code = asyncio.run(run(user_id=args.user_id, topic=args.topic, id_token=args.id_token))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
