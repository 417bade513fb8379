"""
Minimal script that uses the public API to pay a merchant in USDC.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Iterable, Tuple

from solders.keypair import Keypair

from checkout_payments import CheckoutError, ConfigError, create_checkout_client, load_checkout_config


def _override(value: str) -> Tuple[str, str]:
    if "=" not in value:
        raise argparse.ArgumentTypeError("Overrides must look like KEY=VALUE")
    key, val = value.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError("Override key must not be empty")
    return key, val


def _build_overrides(pairs: Iterable[Tuple[str, str]]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, value in pairs:
        overrides[key] = value
    return overrides


def _load_keypair(path: str) -> Keypair:
    # Same JSON byte-array format the Solana CLI writes.
    secret = json.loads(Path(path).read_text(encoding="utf-8"))
    return Keypair.from_bytes(bytes(secret))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Pay a checkout amount using the SDK API")
    parser.add_argument("amount", help="Amount in token units (e.g. 10.00)")
    parser.add_argument("--keypair", required=True, help="Path to the payer keypair JSON file")
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to the .env file containing CHECKOUT_* settings",
    )
    parser.add_argument(
        "--set",
        action="append",
        type=_override,
        metavar="KEY=VALUE",
        default=None,
        help="Override an environment variable without editing the .env file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    parser.add_argument("--recipient", help="Merchant wallet (default: CHECKOUT_MERCHANT_WALLET)")
    parser.add_argument("--token", help="Token symbol (default: CHECKOUT_DEFAULT_TOKEN)")
    parser.add_argument("--memo", help="Attach a memo to the transfer")
    parser.add_argument(
        "--gasless",
        action="store_true",
        help="Let the configured relay pay network fees when it sponsors the token",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        config = load_checkout_config(env_file=args.env_file, overrides=_build_overrides(args.set or ()))
    except (ConfigError, ValueError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    client = create_checkout_client(config=config)
    keypair = _load_keypair(args.keypair)
    logging.info("Paying %s from %s on %s", args.amount, keypair.pubkey(), config.network)

    try:
        receipt = client.pay(
            keypair,
            args.amount,
            recipient=args.recipient,
            token=args.token,
            memo=args.memo,
            gasless=args.gasless,
        )
    except CheckoutError as exc:
        logging.error("Payment failed [%s]: %s", exc.error_code, exc.message)
        return 1

    logging.info(
        "Payment confirmed (gasless=%s, fee=%d). Signature: %s",
        receipt.gasless,
        receipt.fee_atomic,
        receipt.signature,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
