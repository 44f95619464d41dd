#!/usr/bin/env python3
"""
Gatekeeper -- management commands for the identity service.

Usage:
  python main.py generate-keys --out keys/
  python main.py create-admin admin@company.com
  python main.py purge-tokens
  python main.py purge-tokens --older-than-days 7

Environment variables are read through core.config (SECRET_KEY,
DATABASE_URL, JWT_PRIVATE_KEY_PATH, ...). See .env.example.
"""

import argparse
import getpass
import sys
from datetime import timedelta
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from auth.authority import TokenAuthority
from auth.errors import EmailExists
from auth.models import User
from auth.sso import MAX_PASSWORD_BYTES, MIN_PASSWORD_LENGTH
from auth.store import UserStore, create_store_engine, now_iso
from auth.token_store import OAuthStateStore, RefreshTokenStore
from auth.tokens import hash_password
from core.config import get_settings


def _generate_keys(out_dir: str, algorithm: str) -> None:
    """Write private.pem and public.pem for JWT signing into out_dir.

    The private key file is created with mode 0600; refuses to overwrite.
    """
    target = Path(out_dir).resolve()
    target.mkdir(parents=True, exist_ok=True)
    private_path = target / "private.pem"
    public_path = target / "public.pem"
    if private_path.exists() or public_path.exists():
        print(f"  [!] Keys already exist in {target}. Remove them first.")
        sys.exit(1)

    if algorithm == "ES256":
        key = ec.generate_private_key(ec.SECP256R1())
    else:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    private_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    private_path.chmod(0o600)
    public_path.write_bytes(
        key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    print(f"  {algorithm} signing pair written to {target}")
    print(f"  Set JWT_ALGORITHM={algorithm} JWT_PRIVATE_KEY_PATH={private_path} JWT_PUBLIC_KEY_PATH={public_path}")


def _create_admin(email: str) -> None:
    settings = get_settings()
    password = getpass.getpass("Password: ")
    if len(password) < MIN_PASSWORD_LENGTH or len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        print(f"  [!] Password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_BYTES} bytes.")
        sys.exit(1)
    if password != getpass.getpass("Confirm:  "):
        print("  [!] Passwords do not match.")
        sys.exit(1)

    store = UserStore(create_store_engine(settings.database_url))
    try:
        user_id = store.create_user(
            User(email=email, role="admin", hashed_password=hash_password(password), email_verified=True)
        )
    except EmailExists:
        print(f"  [!] A user with email {email} already exists.")
        sys.exit(1)
    finally:
        store.close()
    print(f"  Admin {email} created (id {user_id}).")


def _purge(older_than_days: int) -> None:
    settings = get_settings()
    engine = create_store_engine(settings.database_url)
    user_store = UserStore(engine)
    try:
        authority = TokenAuthority(settings, RefreshTokenStore(engine), user_store)
        tokens = authority.purge_expired(timedelta(days=older_than_days))
        states = OAuthStateStore(engine).purge_expired(now_iso())
    finally:
        user_store.close()
    print(f"  Purged {tokens} refresh token(s) and {states} OAuth state(s).")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="gatekeeper",
        description="Management commands for the Gatekeeper identity service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py generate-keys --out keys/
  python main.py generate-keys --out keys/ --algorithm ES256
  python main.py create-admin admin@company.com
  python main.py purge-tokens --older-than-days 7
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    keys = sub.add_parser("generate-keys", help="Generate a JWT signing key pair")
    keys.add_argument("--out", metavar="DIR", default="keys", help="Output directory (default: keys)")
    keys.add_argument(
        "--algorithm",
        choices=["RS256", "ES256"],
        default="RS256",
        help="Signing algorithm the key pair is for (default: RS256)",
    )

    admin = sub.add_parser("create-admin", help="Create a password account with the admin role")
    admin.add_argument("email", help="Email address of the new admin")

    purge = sub.add_parser("purge-tokens", help="Delete expired refresh tokens and OAuth states")
    purge.add_argument(
        "--older-than-days",
        type=int,
        default=0,
        metavar="N",
        help="Keep tokens that expired less than N days ago, as reuse evidence (default: 0)",
    )

    args = parser.parse_args()

    if args.command == "generate-keys":
        _generate_keys(args.out, args.algorithm)
    elif args.command == "create-admin":
        _create_admin(args.email)
    elif args.command == "purge-tokens":
        _purge(args.older_than_days)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
