#!/usr/bin/env python3
"""
Generate the secrets callrelay reads from the environment.

Usage:
    python scripts/generate_secrets.py              # all secrets, .env format
    python scripts/generate_secrets.py 48           # 48-byte API tokens
    python scripts/generate_secrets.py --key-only   # only DTMF_ENCRYPTION_KEY

Example output:
    DTMF_ENCRYPTION_KEY=q3v8lZ...=
    ADMIN_TOKEN=Yx8kL2mN9pQ4rS6tU0vW3xZ5aB7cD1eF
    METRICS_TOKEN=fG2hJ4kL6mN8pQ0rS2tU4vW6xZ8aB0cD

DTMF_ENCRYPTION_KEY must be the same key the voice pipeline uses to encrypt
captured digits; only generate a new one when setting both up together.
"""
import secrets
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from callrelay.infra.digits_cipher import FernetDigitsCipher  # noqa: E402


def generate_token(length: int = 32) -> str:
    """Generate a URL-safe random token."""
    return secrets.token_urlsafe(length)


def main():
    length = 32
    key_only = False

    for arg in sys.argv[1:]:
        if arg == "--key-only":
            key_only = True
        elif arg.isdigit():
            length = int(arg)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return

    print("# Add this to your .env file:")
    print(f"DTMF_ENCRYPTION_KEY={FernetDigitsCipher.generate_key()}")
    if not key_only:
        print(f"ADMIN_TOKEN={generate_token(length)}")
        print(f"METRICS_TOKEN={generate_token(length)}")


if __name__ == "__main__":
    main()
