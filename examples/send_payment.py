"""
Minimal script that uses the public API to pay one wallet address from another.

Creates an incoming payment on the receiver, quotes it from the sender and
pays the quote. The outgoing-payment grant needs the sender's consent: the
script prints the redirect URL and asks for the ``interact_ref`` the browser
was sent back with.
"""

from __future__ import annotations

import argparse
import logging
import sys
import uuid
from typing import Iterable, Optional, Tuple

import requests

from open_payments import (
    ConfigError,
    GrantState,
    OpenPaymentsError,
    WalletAddress,
    create_client,
    load_client_config,
)


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


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send an Open Payments payment using the client API")
    parser.add_argument("sender", help="Sender wallet address URL (or $payment-pointer)")
    parser.add_argument("receiver", help="Receiver wallet address URL (or $payment-pointer)")
    parser.add_argument("amount", help="Amount to receive, in the receiver's asset (e.g. 12.50)")
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to the .env file containing OPEN_PAYMENTS_* settings",
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
        "--finish-uri",
        help="Where the authorization server redirects the sender after consenting",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args()


def fetch_wallet_address(url: str) -> WalletAddress:
    if url.startswith("$"):
        url = "https://" + url[1:]
    response = requests.get(url, headers={"Accept": "application/json"}, timeout=10)
    response.raise_for_status()
    return WalletAddress.from_payload(response.json())


def ask_for_interact_ref(state: GrantState) -> Optional[str]:
    print(f"Approve the payment at: {state.interact_redirect}")
    interact_ref = input("interact_ref from the redirect (empty to abort): ").strip()
    return interact_ref or None


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        config = load_client_config(
            env_file=args.env_file,
            overrides=_build_overrides(args.set or ()),
        )
    except (ConfigError, ValueError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    try:
        sender = fetch_wallet_address(args.sender)
        receiver = fetch_wallet_address(args.receiver)
    except (requests.RequestException, ValueError) as exc:
        logging.error("Failed to fetch wallet address: %s", exc)
        return 1

    with create_client(config=config, interaction_handler=ask_for_interact_ref) as client:
        try:
            incoming = client.create_incoming_payment(receiver, args.amount)
            logging.info("Created incoming payment %s", incoming["id"])

            quote = client.create_quote(sender, incoming["id"])
            logging.info(
                "Quote %s debits %s %s",
                quote["id"],
                quote["debitAmount"]["value"],
                quote["debitAmount"]["assetCode"],
            )

            payment = client.create_outgoing_payment(
                sender,
                quote,
                idempotency_key=str(uuid.uuid4()),
                finish_uri=args.finish_uri,
            )
        except OpenPaymentsError as exc:
            logging.error("Payment failed: %s", exc)
            return 1

    logging.info("Outgoing payment %s created", payment["id"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
