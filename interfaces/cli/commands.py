from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, List, Optional, Sequence, TextIO, Tuple

from application.services import LedgerService
from domain.errors import StoreError
from domain.models import Account

logger = logging.getLogger(__name__)

Envelope = List[Any]


def _error(message: str) -> Envelope:
    return ["error", message]


def build_parser() -> argparse.ArgumentParser:
    """
    Subcommands mirror the original request handlers one to one.
    """

    parser = argparse.ArgumentParser(prog="opencoins", description="OpenCoins ledger")
    sub = parser.add_subparsers(dest="command", required=True)

    register = sub.add_parser("register", help="register a new account")
    register.add_argument("--username", required=True)
    register.add_argument("--name", required=True, help="display name")
    register.add_argument("--password", required=True)
    register.add_argument("--ip", default=None)

    info = sub.add_parser("info", help="show an account's public info")
    info.add_argument("--username")
    info.add_argument("--name", help="display name")

    auth = sub.add_parser("auth", help="check a password")
    _add_credentials(auth)

    mint = sub.add_parser("mint", help="create a token from your balance")
    _add_credentials(mint)
    mint.add_argument("--worth", required=True)
    mint.add_argument("--revert", default=None, help="revert tag")

    redeem = sub.add_parser("redeem", help="redeem a token into your balance")
    _add_credentials(redeem)
    redeem.add_argument("--token", required=True)

    revert = sub.add_parser("revert", help="revert every token with a tag")
    _add_credentials(revert)
    revert.add_argument("--revert", required=True, help="revert tag")

    delete = sub.add_parser("delete", help="delete your account")
    _add_credentials(delete)
    delete.add_argument("--transfer-to", dest="transfer_to", default=None)

    return parser


def _add_credentials(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--username", required=True)
    parser.add_argument("--password", required=True)


def _login(
    service: LedgerService,
    username: str,
    password: str,
) -> Tuple[Optional[Account], Optional[Envelope]]:
    account = service.lookup_account(username=username)
    if account is None:
        return None, _error("No such user")
    if not service.authenticate(account, password):
        return None, _error("Bad password")
    return account, None


def execute(args: argparse.Namespace, service: LedgerService) -> Envelope:
    """Run one parsed command and return its response envelope."""

    if args.command == "register":
        return service.register(args.username, args.name, args.password, args.ip).to_envelope()

    if args.command == "info":
        if not args.username and not args.name:
            return _error("Missing name or username field")
        account = service.lookup_account(username=args.username, display_name=args.name)
        if account is None:
            return _error("No such user")
        return [
            "success",
            {"username": account.username, "name": account.display_name, "coins": account.balance},
        ]

    account, failure = _login(service, args.username, args.password)
    if failure is not None:
        return failure

    if args.command == "auth":
        return ["success"]
    if args.command == "mint":
        return service.mint(args.worth, args.revert, account).to_envelope()
    if args.command == "redeem":
        return service.redeem(args.token, account).to_envelope()
    if args.command == "revert":
        return service.revert_group(args.revert, account).to_envelope()
    if args.command == "delete":
        transfer_to = None
        if args.transfer_to:
            transfer_to = service.lookup_account(username=args.transfer_to)
            if transfer_to is None:
                return _error("No such transferto user")
        return service.delete_account(account, transfer_to).to_envelope()

    raise ValueError(f"Unknown command: {args.command}")


def main(
    argv: Sequence[str],
    service: LedgerService,
    out: TextIO = sys.stdout,
) -> int:
    args = build_parser().parse_args(list(argv))
    try:
        envelope = execute(args, service)
    except StoreError:
        logger.exception("Command %s failed", args.command)
        envelope = _error("Internal error")
        exit_code = 2
    else:
        exit_code = 0 if envelope[0] == "success" else 1

    out.write(json.dumps(envelope) + "\n")
    return exit_code

