"""
Command-line interface for running and exercising the checkout service.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple

import requests
import uvicorn

from .api import ConfigError, create_checkout_client, create_checkout_service, load_checkout_config
from .core.config import CheckoutConfig
from .core.errors import CheckoutError
from .core.webhooks import sign_payload, verify_signature
from .server import create_app

__all__ = ["build_parser", "configure_logging", "main", "run_cli"]


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _env_override(value: str) -> Tuple[str, str]:
    if "=" not in value:
        raise argparse.ArgumentTypeError("Overrides must look like KEY=VALUE")
    key, val = value.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError("Override key must not be empty")
    return key, val


def _collect_overrides(pairs: Iterable[Tuple[str, str]]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, value in pairs:
        overrides[key] = value
    return overrides


def _read_body(path: Optional[str]) -> bytes:
    if path is None or path == "-":
        return sys.stdin.buffer.read()
    return Path(path).read_bytes()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="checkout-payments",
        description="Run the stablecoin checkout service and inspect payments on Solana",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to the .env file containing CHECKOUT_* settings (default: .env)",
    )
    parser.add_argument(
        "--set",
        action="append",
        type=_env_override,
        metavar="KEY=VALUE",
        default=None,
        help="Override an environment variable without editing the .env file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the checkout HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument(
        "--webhook-secret",
        help="Mount /webhooks/receive and verify incoming events with this secret",
    )

    link = commands.add_parser("link", help="Print a hosted checkout link for a payment")
    link.add_argument("amount", help="Amount in token units, e.g. 10.00")
    link.add_argument("--token", help="Token symbol (default: CHECKOUT_DEFAULT_TOKEN)")
    link.add_argument("--memo")
    link.add_argument("--order-id")

    quote = commands.add_parser("quote", help="Show the relay fee for a token")
    quote.add_argument("--token", default="USDC")

    status = commands.add_parser("status", help="Look up a transaction signature")
    status.add_argument("signature")

    sign = commands.add_parser("sign-webhook", help="Sign a webhook body (file or stdin)")
    sign.add_argument("--secret", required=True)
    sign.add_argument("--file", help="Body file; '-' or omitted reads stdin")

    verify = commands.add_parser("verify-webhook", help="Verify a webhook body signature")
    verify.add_argument("--secret", required=True)
    verify.add_argument("--signature", required=True)
    verify.add_argument("--file", help="Body file; '-' or omitted reads stdin")
    return parser


def _serve(config: CheckoutConfig, args: argparse.Namespace) -> int:
    service = create_checkout_service(config=config, session=requests.Session())
    app = create_app(service, webhook_secret=args.webhook_secret)
    logging.info("Serving checkout API on %s:%d (%s)", args.host, args.port, config.network)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def _link(config: CheckoutConfig, args: argparse.Namespace) -> int:
    client = create_checkout_client(config=config)
    payment = client.create_payment(
        args.amount, token=args.token, memo=args.memo, order_id=args.order_id
    )
    print(payment.checkout_url)
    return 0


def _quote(config: CheckoutConfig, args: argparse.Namespace) -> int:
    client = create_checkout_client(config=config)
    quote = client.fetch_quote()
    mint = str(client.builder.mint(args.token))
    token_fee = quote.fee_for_mint(mint)
    if token_fee is None:
        logging.error("Relay does not sponsor %s on %s", args.token.upper(), config.network)
        return 1
    print(
        json.dumps(
            {
                "feePayer": quote.fee_payer,
                "token": args.token.upper(),
                "fee": client.codec.format(token_fee.fee, args.token, places=token_fee.decimals),
                "feeAtomic": token_fee.fee,
                "account": token_fee.account,
            },
            indent=2,
        )
    )
    return 0


def _status(config: CheckoutConfig, args: argparse.Namespace) -> int:
    client = create_checkout_client(config=config)
    result = client.get_payment_status(args.signature)
    print(json.dumps({"signature": result.signature, "state": result.state.value, "error": result.error}))
    return 0 if result.confirmed else 1


def _sign_webhook(args: argparse.Namespace) -> int:
    print(sign_payload(_read_body(args.file), args.secret))
    return 0


def _verify_webhook(args: argparse.Namespace) -> int:
    if verify_signature(_read_body(args.file), args.signature, args.secret):
        logging.info("Signature is valid")
        return 0
    logging.error("Signature does not match")
    return 1


def run_cli(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    if args.command == "sign-webhook":
        return _sign_webhook(args)
    if args.command == "verify-webhook":
        return _verify_webhook(args)

    overrides = _collect_overrides(args.set or ())
    try:
        config = load_checkout_config(env_file=args.env_file, overrides=overrides)
    except (ConfigError, ValueError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    handlers = {"serve": _serve, "link": _link, "quote": _quote, "status": _status}
    try:
        return handlers[args.command](config, args)
    except (CheckoutError, ConfigError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1


def main() -> int:
    return run_cli()


if __name__ == "__main__":
    sys.exit(main())
