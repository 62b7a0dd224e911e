"""
Command-line interface for PayPer.

Provides commands for:
- Listing models and their prices
- Checking the live token price and per-model quotes
- Verifying a settlement reference against the ledger
- Polling generation tasks
- Running the HTTP server
"""

import argparse
import json
import logging
import sys
from typing import Optional

from payper.config import configure_logging
from payper.errors import PayperError, ProviderTaskFailed
from payper.schemas import MediaType
from payper.service import PayperService, build_service
from payper.validation import ValidationError, validate_reference


def _service() -> PayperService:
    return build_service()


def cmd_models(args) -> int:
    """List the model catalog."""
    service = _service()
    kind = MediaType(args.type) if args.type else None

    print("\n" + "=" * 60)
    print("PAYPER MODELS")
    print("=" * 60)
    for model in service.models(kind):
        print(f"  {model.id:<14} {model.media_type.value:<6} ${model.price_usd:<8} {model.name} ({model.vendor})")
    print("=" * 60)
    return 0


def cmd_price(args) -> int:
    """Show the current token price and its source."""
    service = _service()
    quote = service.price()
    symbol = service.settings.token_symbol
    if args.json:
        print(json.dumps({
            "symbol": symbol,
            "priceUSD": str(quote.price_usd),
            "source": quote.source.value,
            "sourceName": quote.source_name,
        }))
        return 0
    print(f"{symbol}: ${quote.price_usd} ({quote.source.value}: {quote.source_name})")
    return 0


def cmd_quote(args) -> int:
    """Show the token amounts a model costs right now."""
    service = _service()
    split = service.quote(args.model)
    symbol = service.settings.token_symbol

    print("\n" + "=" * 60)
    print(f"QUOTE: {args.model}")
    print("=" * 60)
    print(f"List price:   ${split.usd_amount}")
    print(f"Token price:  ${split.unit_price_usd} ({split.price_source.value if split.price_source else 'n/a'})")
    print(f"Total:        {split.total_tokens:,} {symbol}")
    print(f"  Base:       {split.base_tokens:,}")
    print(f"  Buyback:    {split.fee_tokens:,} ({split.fee_percent}%)")
    print("=" * 60)
    return 0


def cmd_verify(args) -> int:
    """Check a transaction signature against the ledger."""
    validate_reference(args.reference)
    service = _service()
    result = service.payments.verifier.verify(args.reference, args.tokens)
    print(json.dumps({
        "reference": result.reference,
        "outcome": result.outcome.value,
        "expectedTokens": result.expected_tokens,
        "transferredTokens": str(result.transferred_tokens),
        "detail": result.detail,
    }, indent=2))
    return 0 if result.verified else 1


def cmd_status(args) -> int:
    """Poll a generation task once, or until it finishes with --wait."""
    service = _service()
    try:
        if args.wait:
            status = service.wait(args.task_id, args.model, timeout=args.timeout, interval=args.interval)
        else:
            status = service.status(args.task_id, args.model)
    except ProviderTaskFailed as e:
        print(json.dumps({
            "success": False,
            "taskId": e.task_id,
            "state": "failed",
            "errorCode": e.error_code,
            "errorMessage": e.error_message,
        }, indent=2))
        return 1
    print(json.dumps(status.to_dict(), indent=2))
    return 0


def cmd_serve(args) -> int:
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run(
        "api.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
    )
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="payper",
        description="PayPer - pay-per-generation over HTTP 402",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # What does a Sora 2 video cost right now?
  payper quote sora-2

  # Did this transaction pay 466 tokens to the collection account?
  payper verify 5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW --tokens 466

  # Wait for a task to finish
  payper status 8f2c0d7e --model veo-3.1 --wait
""",
    )
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    models_parser = subparsers.add_parser("models", help="List models and prices")
    models_parser.add_argument("--type", "-t", choices=[m.value for m in MediaType],
                               help="Only list image or video models")

    price_parser = subparsers.add_parser("price", help="Show the current token price")
    price_parser.add_argument("--json", action="store_true", help="Print JSON")

    quote_parser = subparsers.add_parser("quote", help="Quote a model in tokens")
    quote_parser.add_argument("model", help="Model id, e.g. gpt-image-1")

    verify_parser = subparsers.add_parser("verify", help="Verify a settlement reference")
    verify_parser.add_argument("reference", help="Transaction signature")
    verify_parser.add_argument("--tokens", "-n", type=int, required=True,
                               help="Minimum whole tokens expected at the collection account")

    status_parser = subparsers.add_parser("status", help="Show a generation task's status")
    status_parser.add_argument("task_id", help="Provider task id")
    status_parser.add_argument("--model", "-m", required=True, help="Model id the task was created for")
    status_parser.add_argument("--wait", "-w", action="store_true", help="Poll until the task finishes")
    status_parser.add_argument("--timeout", type=float, default=600.0, help="Max seconds to wait")
    status_parser.add_argument("--interval", type=float, default=5.0, help="Seconds between polls")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", "-p", type=int, default=8000)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    configure_logging(getattr(logging, args.log_level))

    commands = {
        "models": cmd_models,
        "price": cmd_price,
        "quote": cmd_quote,
        "verify": cmd_verify,
        "status": cmd_status,
        "serve": cmd_serve,
    }

    try:
        return commands[args.command](args)
    except (PayperError, ValidationError, TimeoutError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
