#!/usr/bin/env python3
"""
Provenance Ledger Management CLI

Commands:
- keygen: Generate a wallet keypair
- sign-message: Sign a login message with a wallet seed
- generate-secret: Generate a credential sealing secret
- demo: Run a product lifecycle in-process and verify the chain
- serve: Run the API server

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage keygen
    python -m tools.manage sign-message --seed <seed> --message "login:1700000000"
    python -m tools.manage generate-secret
    python -m tools.manage demo
    python -m tools.manage serve --port 8000
"""

import argparse
import secrets
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def cmd_keygen(args):
    """Generate a wallet keypair."""
    from provenance.core import Signer

    seed, public = Signer.generate_keypair()

    print("[OK] Wallet keypair generated")
    print(f"\n  Wallet identity (public):")
    print(f"  {public}")
    print(f"\n  Seed (KEEP SECRET!):")
    print(f"  {seed}")


def cmd_sign_message(args):
    """Sign a message, as a wallet would for login."""
    from provenance.core import Signer

    try:
        signature = Signer.sign(args.message, args.seed)
    except ValueError as e:
        print(f"[FAIL] {e}")
        return 1

    print(signature)
    return 0


def cmd_generate_secret(args):
    """Generate a credential sealing secret."""
    secret = secrets.token_urlsafe(args.bytes)
    print("Sealing secret (set as PROVENANCE_SEALING_SECRET):")
    print(secret)


def cmd_demo(args):
    """Run a lifecycle against an in-process ledger."""
    from provenance.config import IdentityConfig
    from provenance.core import (
        IdentityVerifier,
        OwnershipMismatch,
        ProvenanceLedger,
        Signer,
    )

    verifier = IdentityVerifier(IdentityConfig(sealing_secret=secrets.token_urlsafe(32)))
    ledger = ProvenanceLedger()

    maker_seed, maker = Signer.generate_keypair()
    _, buyer = Signer.generate_keypair()

    message = "Sign in to the provenance ledger"
    credential = verifier.authenticate(maker, message, Signer.sign(message, maker_seed))
    acting = verifier.validate(credential.token)
    print(f"[OK] Logged in as {acting[:8]}... (expires in {credential.expires_in}s)")

    product_id = args.product_id
    ledger.create_product(product_id, "Demo product", acting)
    ledger.record_repair(product_id, acting, "Factory inspection")
    ledger.transfer_ownership(product_id, acting, buyer)

    try:
        ledger.transfer_ownership(product_id, acting, buyer)
    except OwnershipMismatch as e:
        print(f"[OK] Stale owner rejected: {e}")

    ledger.mark_end_of_life(product_id, buyer)

    print(f"\nHistory of {product_id}:")
    for record in ledger.get_history(product_id):
        print(
            f"  #{record.sequence} {record.kind:<11} owner={record.owner[:8]}... "
            f"hash={record.record_hash[:16]}..."
        )

    if ledger.verify_chain_integrity():
        print("\n[OK] Chain integrity verified OK")
        return 0

    print("\n[FAIL] Chain integrity verification FAILED!")
    return 1


def cmd_serve(args):
    """Run the API server with uvicorn."""
    import uvicorn

    uvicorn.run(
        "provenance.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


def main():
    parser = argparse.ArgumentParser(
        description="Provenance Ledger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # keygen
    subparsers.add_parser(
        "keygen",
        help="Generate a wallet keypair"
    )

    # sign-message
    p_sign = subparsers.add_parser(
        "sign-message",
        help="Sign a message with a wallet seed"
    )
    p_sign.add_argument("--seed", required=True, help="Base58 wallet seed")
    p_sign.add_argument("--message", required=True, help="Message to sign")

    # generate-secret
    p_secret = subparsers.add_parser(
        "generate-secret",
        help="Generate a credential sealing secret"
    )
    p_secret.add_argument("--bytes", type=int, default=32, help="Entropy in bytes (default: 32)")

    # demo
    p_demo = subparsers.add_parser(
        "demo",
        help="Run a product lifecycle and verify the chain"
    )
    p_demo.add_argument("--product-id", default="SN-DEMO-0001", help="Product ID to use")

    # serve
    p_serve = subparsers.add_parser(
        "serve",
        help="Run the API server"
    )
    p_serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    p_serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    p_serve.add_argument("--reload", action="store_true", help="Reload on code changes")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "keygen": cmd_keygen,
        "sign-message": cmd_sign_message,
        "generate-secret": cmd_generate_secret,
        "demo": cmd_demo,
        "serve": cmd_serve,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
