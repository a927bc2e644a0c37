# Onchain Gateway: command line entry point
#
# Offline commands (derive-gateway, derive-consumer, keygen) need no node.
# Every other command talks to the node at --rpc-url and signs with the
# keypair at --keypair. Any rejection prints "error: <message>" to stderr
# and exits with status 1.

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .client import (
    GatewayClient,
    RpcError,
    TransactionFailed,
    consume_instruction,
    hash_api_key,
    initialize_gateway_instruction,
    register_consumer_instruction,
    topup_instruction,
)
from .config import ConfigError, GatewaySettings
from .core import EventSeverity, EventType, configure_audit_logger, get_audit_logger
from .ledger import Keypair, Pubkey, Transaction, read_keypair_file, write_keypair_file
from .program import consumer_pda, describe_error_code, gateway_pda
from .program.state import LayoutError


def _pubkey(text: str) -> Pubkey:
    try:
        return Pubkey.from_string(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _u64(text: str) -> int:
    value = int(text)
    if not 0 <= value < 2**64:
        raise argparse.ArgumentTypeError(f"{text} is outside the u64 range")
    return value


def _build_parser(settings: GatewaySettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="onchain-gateway",
        description="Onchain Gateway - prepaid, rate-limited API billing on a ledger",
    )
    parser.add_argument("--rpc-url", default=settings.rpc_url, help=f"Node URL (default: {settings.rpc_url})")
    parser.add_argument("--program-id", type=_pubkey, default=settings.program_id, help="Gateway program id")
    parser.add_argument("--keypair", type=Path, default=settings.keypair_path, help="Signer keypair file")
    parser.add_argument("--version", action="version", version=f"Onchain Gateway v{__version__}")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("derive-gateway", help="Print the gateway address for an admin")
    p.add_argument("admin", type=_pubkey)

    p = sub.add_parser("derive-consumer", help="Print the consumer address for an API key")
    p.add_argument("gateway", type=_pubkey)
    p.add_argument("owner", type=_pubkey)
    p.add_argument("api_key_id", type=_u64)

    p = sub.add_parser("init-gateway", help="Create a gateway owned by the signer")
    p.add_argument("treasury", type=_pubkey)
    p.add_argument("backend_signer", type=_pubkey)
    p.add_argument("base_price_lamports", type=_u64)
    p.add_argument("max_surge_bps", type=int)
    p.add_argument("period_limit", type=_u64)
    p.add_argument("period_seconds", type=int)
    p.add_argument("bucket_capacity", type=_u64)
    p.add_argument("refill_per_second", type=_u64)

    p = sub.add_parser("register-consumer", help="Register an API key under a gateway")
    p.add_argument("gateway", type=_pubkey)
    p.add_argument("api_key_id", type=_u64)
    p.add_argument("api_key")

    p = sub.add_parser("topup", help="Prepay lamports into a consumer record")
    p.add_argument("consumer", type=_pubkey)
    p.add_argument("lamports", type=_u64)

    p = sub.add_parser("consume", help="Charge one API call (signer is the backend)")
    p.add_argument("gateway", type=_pubkey)
    p.add_argument("consumer", type=_pubkey)
    p.add_argument("treasury", type=_pubkey)
    p.add_argument("api_key_id", type=_u64)
    p.add_argument("api_key")

    p = sub.add_parser("keygen", help="Write a new keypair file")
    p.add_argument("outfile", type=Path)
    p.add_argument("--force", action="store_true", help="Overwrite an existing file")

    p = sub.add_parser("airdrop", help="Request lamports from the node faucet")
    p.add_argument("lamports", type=_u64)
    p.add_argument("--to", type=_pubkey, default=None, help="Recipient (default: keypair)")

    p = sub.add_parser("show-gateway", help="Decode a gateway record")
    p.add_argument("address", type=_pubkey)

    p = sub.add_parser("show-consumer", help="Decode a consumer record")
    p.add_argument("address", type=_pubkey)

    p = sub.add_parser("serve", help="Run a local node")
    p.add_argument("--host", default=settings.host)
    p.add_argument("--port", type=int, default=settings.port)
    p.add_argument("--db-path", type=Path, default=settings.db_path)
    p.add_argument("--audit-dir", type=Path, default=settings.audit_dir)
    p.add_argument("--no-faucet", action="store_true", help="Disable POST /airdrop")

    return parser


# ── Commands ─────────────────────────────────────────────────────────


def _print_record(record) -> None:
    for name, value in vars(record).items():
        if isinstance(value, bytes):
            value = value.hex()
        print(f"{name}={value}")


def _submit(args, signer: Keypair, instruction) -> None:
    with GatewayClient(args.rpc_url) as client:
        receipt = client.send_transaction(Transaction([instruction]).sign(signer))
    print(f"signature={receipt.signature}")


def _run_online(args) -> None:
    program_id: Pubkey = args.program_id

    if args.command in ("show-gateway", "show-consumer"):
        with GatewayClient(args.rpc_url) as client:
            if args.command == "show-gateway":
                record = client.get_gateway(args.address)
            else:
                record = client.get_consumer(args.address)
        if record is None:
            raise ValueError(f"account {args.address} not found")
        _print_record(record)
        return

    signer = read_keypair_file(args.keypair)

    if args.command == "airdrop":
        recipient = args.to or signer.pubkey()
        with GatewayClient(args.rpc_url) as client:
            receipt = client.request_airdrop(recipient, args.lamports)
        print(f"signature={receipt.signature}")
        return

    if args.command == "init-gateway":
        gateway, _ = gateway_pda(signer.pubkey(), program_id)
        print(f"gateway_pda={gateway}")
        ix = initialize_gateway_instruction(
            program_id,
            signer.pubkey(),
            args.treasury,
            args.backend_signer,
            args.base_price_lamports,
            args.max_surge_bps,
            args.period_limit,
            args.period_seconds,
            args.bucket_capacity,
            args.refill_per_second,
        )
    elif args.command == "register-consumer":
        consumer, _ = consumer_pda(args.gateway, signer.pubkey(), args.api_key_id, program_id)
        print(f"consumer_pda={consumer}")
        ix = register_consumer_instruction(
            program_id, signer.pubkey(), args.gateway, args.api_key_id, hash_api_key(args.api_key)
        )
    elif args.command == "topup":
        ix = topup_instruction(program_id, signer.pubkey(), args.consumer, args.lamports)
    else:
        ix = consume_instruction(
            program_id,
            signer.pubkey(),
            args.gateway,
            args.consumer,
            args.treasury,
            args.api_key_id,
            hash_api_key(args.api_key),
        )
    _submit(args, signer, ix)


def _serve(args) -> int:
    from .api.main import start_api_server

    settings = GatewaySettings(
        rpc_url=args.rpc_url,
        program_id=args.program_id,
        keypair_path=args.keypair,
        db_path=args.db_path,
        audit_dir=args.audit_dir,
        host=args.host,
        port=args.port,
        faucet_enabled=not args.no_faucet,
    )
    try:
        start_api_server(settings)
    except KeyboardInterrupt:
        print("\nShutting down node...")
        get_audit_logger().log_event(
            event_type=EventType.NODE_STOP,
            severity=EventSeverity.INFO,
            message="Gateway node stopped (user interrupt)",
        )
    except Exception as e:
        print(f"error: {e}", file=sys.stderr)
        get_audit_logger().log_event(
            event_type=EventType.NODE_STOP,
            severity=EventSeverity.CRITICAL,
            message=f"Gateway node crashed: {e}",
        )
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the ``onchain-gateway`` command."""
    try:
        settings = GatewaySettings.from_env()
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    args = _build_parser(settings).parse_args(argv)

    if args.command == "derive-gateway":
        gateway, bump = gateway_pda(args.admin, args.program_id)
        print(f"gateway_pda={gateway}")
        print(f"bump={bump}")
        return 0

    if args.command == "derive-consumer":
        consumer, bump = consumer_pda(args.gateway, args.owner, args.api_key_id, args.program_id)
        print(f"consumer_pda={consumer}")
        print(f"bump={bump}")
        return 0

    if args.command == "keygen":
        if args.outfile.expanduser().exists() and not args.force:
            print(f"error: {args.outfile} already exists (use --force)", file=sys.stderr)
            return 1
        keypair = Keypair.generate()
        write_keypair_file(keypair, args.outfile)
        print(f"pubkey={keypair.pubkey()}")
        return 0

    if args.command == "serve":
        return _serve(args)

    configure_audit_logger(settings.audit_dir)
    try:
        _run_online(args)
    except TransactionFailed as e:
        message = e.error.get("message")
        if not message and e.code is not None:
            message = describe_error_code(e.code)
        print(f"error: {message} ({e.error.get('name', 'unknown')})", file=sys.stderr)
        return 1
    except (RpcError, LayoutError, OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
