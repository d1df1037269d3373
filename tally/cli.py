"""
Tally CLI - Command-line interface for the scoring engine.

Usage:
    tally validate <formula>                        Check formula syntax
    tally eval <formula> [--ref name=value] [--round N]
    tally refs <formula>                            List references
    tally totals <state_json> --session ID [--round ID]
    tally serve [--host HOST] [--port PORT]         Run the HTTP API
"""

import argparse
import json
import sys

from .config import Settings
from .logging import setup_logging


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Tally - Board Game Scoring Engine",
        prog="tally",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Validate command
    validate_parser = subparsers.add_parser("validate", help="Check formula syntax")
    validate_parser.add_argument("formula", help="Formula text")

    # Eval command
    eval_parser = subparsers.add_parser("eval", help="Evaluate a formula")
    eval_parser.add_argument("formula", help="Formula text")
    eval_parser.add_argument(
        "--ref", action="append", default=[], metavar="NAME=VALUE",
        help="Reference value (repeatable)",
    )
    eval_parser.add_argument("--round", type=int, help="Value of round()")

    # Refs command
    refs_parser = subparsers.add_parser("refs", help="List formula references")
    refs_parser.add_argument("formula", help="Formula text")

    # Totals command
    totals_parser = subparsers.add_parser("totals", help="Compute totals from a state snapshot")
    totals_parser.add_argument("state_file", help="Path to persisted state JSON")
    totals_parser.add_argument("--session", required=True, help="Session id")
    totals_parser.add_argument("--round", help="Round id in context")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port")

    args = parser.parse_args(argv)

    settings = Settings.from_env()
    setup_logging(settings)

    if args.command == "validate":
        cmd_validate(args)
    elif args.command == "eval":
        cmd_eval(args)
    elif args.command == "refs":
        cmd_refs(args)
    elif args.command == "totals":
        cmd_totals(args)
    elif args.command == "serve":
        cmd_serve(args, settings)
    else:
        parser.print_help()
        sys.exit(1)


def cmd_validate(args):
    """Check formula syntax."""
    from .engine_core.expression import validate

    result = validate(args.formula)
    if result.valid:
        print("Formula is valid")
    else:
        print(f"Invalid formula: {result.error}")
        sys.exit(1)


def _parse_refs(pairs: list[str]) -> dict[str, float]:
    references = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            print(f"Error: expected NAME=VALUE, got {pair!r}")
            sys.exit(2)
        try:
            references[name.strip()] = float(value)
        except ValueError:
            print(f"Error: value for {name!r} is not a number: {value!r}")
            sys.exit(2)
    return references


def cmd_eval(args):
    """Evaluate a formula."""
    from .engine_core.expression import FormulaError, evaluate_expression

    references = _parse_refs(args.ref)
    try:
        value = evaluate_expression(args.formula, references, args.round)
    except FormulaError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"{value:g}")


def cmd_refs(args):
    """List the references of a formula, one per line."""
    from .engine_core.expression import extract_references

    for name in sorted(extract_references(args.formula)):
        print(name)


def cmd_totals(args):
    """Print per-player category totals and winners for one session."""
    from .api.schemas import StateSnapshot
    from .engine_core.aggregation import format_category_name
    from .session import SessionManager

    try:
        with open(args.state_file, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError:
        print(f"Error: File not found: {args.state_file}")
        sys.exit(1)

    state = StateSnapshot.model_validate(raw).to_domain()
    manager = SessionManager(state)
    session = manager.get_session(args.session)
    if session is None:
        print(f"Error: Session not found: {args.session}")
        sys.exit(1)

    categories = state.categories
    for player_id, totals in manager.totals(args.session, args.round).items():
        print(f"{player_id}: {sum(totals.values()):g}")
        for category_id, total in sorted(totals.items()):
            # entries keyed 'uncategorized' have no definition
            name = format_category_name(categories, None if category_id == "uncategorized" else category_id)
            print(f"  {name}: {total:g}")

    winners = manager.winners(args.session, args.round)
    print(f"Winners: {', '.join(winners) if winners else '-'}")


def cmd_serve(args, settings):
    """Run the HTTP API with uvicorn."""
    try:
        import uvicorn
    except ImportError:
        print("Error: uvicorn not installed. Install with: pip install uvicorn")
        sys.exit(1)

    from .api import create_app
    from .api.service import APIService

    app = create_app(APIService(settings=settings))
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
