"""Command line interface for solidity_storage_tool."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, Optional, Union

from .services.storage import (
    DEFAULT_ENGINE_NAME,
    DEFAULT_MAX_ARRAY_LENGTH,
    StorageError,
    create_service,
)

DEFAULT_NODE_URL = "http://localhost:8545"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Solidity contract storage layout and slot value tool.",
    )
    parser.add_argument(
        "--project",
        required=True,
        help="Path to the Solidity project, a single .sol file, or a class model JSON file.",
    )
    parser.add_argument(
        "--engine",
        default=DEFAULT_ENGINE_NAME,
        help="Registered engine name to use (default: slither).",
    )
    parser.add_argument(
        "--solc-version",
        dest="solc_version",
        help="Optional explicit solc version passed to the engine.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Shortcut for --log-level debug.",
    )
    parser.add_argument(
        "--log-level",
        default="warning",
        choices=["debug", "info", "warning", "error"],
        help="Logging level written to stderr (default: warning).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("contracts", help="List the contracts that can hold storage.")

    storage_parser = subparsers.add_parser(
        "storage",
        help="Emit the storage sections of a contract, optionally with slot values.",
    )
    storage_parser.add_argument("--contract", required=True, help="Contract name.")
    storage_parser.add_argument(
        "--file",
        dest="filename",
        help="File declaring the contract when the name is not unique.",
    )
    storage_parser.add_argument(
        "-d",
        "--data",
        action="store_true",
        help="Read slot values from a node. Requires --address.",
    )
    storage_parser.add_argument("--address", help="Deployed contract address.")
    storage_parser.add_argument(
        "--url",
        default=os.environ.get("NODE_URL", DEFAULT_NODE_URL),
        help="JSON-RPC node url (default: $NODE_URL or http://localhost:8545).",
    )
    storage_parser.add_argument(
        "--block",
        default="latest",
        help="Block number or tag to read storage at (default: latest).",
    )
    storage_parser.add_argument(
        "--max-array-length",
        type=int,
        default=DEFAULT_MAX_ARRAY_LENGTH,
        help=f"Most dynamic array elements to read (default: {DEFAULT_MAX_ARRAY_LENGTH}).",
    )

    return parser


def _engine_kwargs_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {}
    if args.solc_version:
        kwargs["solc_version"] = args.solc_version
    return kwargs


def _parse_block(value: str) -> Union[str, int]:
    try:
        return int(value, 0)
    except ValueError:
        return value


def configure_logging(args: argparse.Namespace) -> None:
    level = logging.DEBUG if args.verbose else getattr(logging, args.log_level.upper())
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def handle_contracts(args: argparse.Namespace) -> Dict[str, Any]:
    service = create_service(
        args.project,
        engine_name=args.engine,
        engine_kwargs=_engine_kwargs_from_args(args),
    )
    return {"contracts": service.list_contracts(), "metadata": {"engine": args.engine}}


def handle_storage(args: argparse.Namespace) -> Dict[str, Any]:
    if args.data and not args.address:
        raise StorageError("--data requires a contract --address")
    service = create_service(
        args.project,
        engine_name=args.engine,
        engine_kwargs=_engine_kwargs_from_args(args),
        max_array_length=args.max_array_length,
    )
    return service.get_storage(
        args.contract,
        args.filename,
        url=args.url,
        contract_address=args.address if args.data else None,
        block_tag=_parse_block(args.block),
    )


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args)

    try:
        if args.command == "contracts":
            result = handle_contracts(args)
        elif args.command == "storage":
            result = handle_storage(args)
        else:  # pragma: no cover
            parser.error(f"Unknown command {args.command}")
            return 2
    except StorageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    json.dump(result, sys.stdout, indent=2, ensure_ascii=False)
    print()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
