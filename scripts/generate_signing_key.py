#!/usr/bin/env python3
"""Create (or load) the RS256 signing key and print its public JWKS.

Usage:
    # Persist a key under KEYS_DIR (created once, reused afterwards):
    KEYS_DIR=/srv/authkernel/keys python scripts/generate_signing_key.py

    # Or choose the directory explicitly:
    python scripts/generate_signing_key.py --keys-dir ./keys --jwks-out jwks.json

Environment Variables:
    KEYS_DIR: Directory holding jwt_private.pem (default /srv/authkernel/keys)
    JWT_PRIVATE_KEY_PATH / JWT_PRIVATE_KEY_BASE64: Use an existing key instead

The private key is written with 0600 permissions and is never printed.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main():
    parser = argparse.ArgumentParser(
        description="Provision the authkernel token signing key",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--keys-dir",
        default=os.environ.get("KEYS_DIR"),
        help="Directory for the generated key (or set KEYS_DIR env var)",
    )
    parser.add_argument(
        "--jwks-out",
        default=None,
        help="Write the public JWKS document to this file",
    )
    args = parser.parse_args()

    if args.keys_dir:
        os.environ["KEYS_DIR"] = args.keys_dir

    # Import here to avoid loading config before env vars are set
    from authkernel.config import get_settings
    from authkernel.service.keys import KeyRing

    try:
        keys = KeyRing.from_settings(get_settings())
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    document = json.dumps(keys.jwks(), indent=2)
    if args.jwks_out:
        Path(args.jwks_out).write_text(document + "\n")
        print(f"Wrote JWKS to {args.jwks_out}")
    else:
        print(document)
    print(f"\nSigning key id: {keys.kid}")


if __name__ == "__main__":
    main()
