from __future__ import annotations

import argparse
import sys
from typing import Sequence

from stockrecon.application.api import StockApi
from stockrecon.application.container import build_container
from stockrecon.config import load_settings
from stockrecon.domain.models import TRANSFER_STATUSES
from stockrecon.logging_config import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stockrecon", description="Multi-location stock reconciliation")
    parser.add_argument("--actor", default=None, help="name recorded in stock history")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("stock", help="current quantity of a product at a location")
    p.add_argument("product", type=int)
    p.add_argument("location", type=int)

    p = sub.add_parser("transfers", help="list transfer orders")
    p.add_argument("--status", choices=TRANSFER_STATUSES, default=None)

    p = sub.add_parser("confirm", help="confirm a pending transfer")
    p.add_argument("id", type=int)

    p = sub.add_parser("cancel", help="cancel a transfer, reversing it if concluded")
    p.add_argument("id", type=int)

    p = sub.add_parser("history", help="recent stock movements")
    p.add_argument("--product", type=int, default=None)
    p.add_argument("--location", type=int, default=None)
    p.add_argument("--limit", type=int, default=20)

    sub.add_parser("health", help="store integrity and stuck orders")
    return parser


def run(args: argparse.Namespace, api: StockApi, out=sys.stdout) -> int:
    if args.command == "stock":
        res = api.get_stock_level(args.product, args.location, actor=args.actor)
        if res.ok:
            print(res.value, file=out)
    elif args.command == "transfers":
        res = api.list_transfers(args.status, actor=args.actor)
        if res.ok:
            for t in res.value:
                moved = ", ".join(f"{it.product_id}x{it.quantity}" for it in t.items)
                flag = " [claimed]" if t.claim_token else ""
                print(f"{t.id}\t{t.status}{flag}\t{t.origin_location_id} -> {t.destination_location_id}\t{moved}", file=out)
    elif args.command == "confirm":
        res = api.confirm_transfer(args.id, actor=args.actor)
        if res.ok:
            print(f"Transfer {args.id} {res.value.status}", file=out)
    elif args.command == "cancel":
        res = api.cancel_transfer(args.id, actor=args.actor)
        if res.ok:
            outcome = res.value
            if outcome.already_cancelled:
                print(f"Transfer {args.id} was already cancelled", file=out)
            else:
                print(f"Transfer {args.id} cancelled (reversed={outcome.reversed})", file=out)
    elif args.command == "history":
        res = api.history(args.product, args.location, args.limit, actor=args.actor)
        if res.ok:
            for h in res.value:
                print(
                    f"{h.datetime}\t{h.operation_type}\tproduct={h.product_id} location={h.location_id}"
                    f"\t{h.previous_qty} -> {h.new_qty}\t{h.actor}",
                    file=out,
                )
    elif args.command == "health":
        res = api.health(actor=args.actor)
        if res.ok:
            for key, value in res.value.__dict__.items():
                print(f"{key}: {value}", file=out)
            if not res.value.healthy:
                return 1
    else:
        return 2

    if not res.ok:
        print(f"error ({res.error_type}): {res.error}", file=sys.stderr)
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    setup_logging(settings.logs_dir, level=settings.log_level)

    container = build_container(settings=settings)
    return run(args, StockApi(container))


if __name__ == "__main__":
    sys.exit(main())
