"""Generate the ledger's local secrets.

Creates a CRON_SECRET (pipeline trigger) and a TOKEN_ENCRYPTION_KEY (Fernet key
for provider tokens) and, with --write, fills them into .env from
.env.template. Secrets already set in an existing .env are kept.

Usage:
    python generate_keys.py            # print only
    python generate_keys.py --write    # write .env
"""

import argparse
import os
import secrets
import sys

from cryptography.fernet import Fernet

from profitledger.security import TokenCipher

SECRET_NAMES = ("CRON_SECRET", "TOKEN_ENCRYPTION_KEY")


def _read_env(path):
    values = {}
    if not os.path.exists(path):
        return values
    with open(path, "r") as f:
        for line in f:
            name, sep, value = line.strip().partition("=")
            if sep and value:
                values[name] = value
    return values


def main():
    parser = argparse.ArgumentParser(description="Generate profitledger secrets")
    parser.add_argument("--write", action="store_true", help="write .env from .env.template")
    parser.add_argument("--template", default=".env.template")
    parser.add_argument("--env", default=".env")
    args = parser.parse_args()

    generated = {
        "CRON_SECRET": secrets.token_urlsafe(32),
        "TOKEN_ENCRYPTION_KEY": Fernet.generate_key().decode(),
    }
    # Fails loudly if the key would be rejected at runtime
    TokenCipher(generated["TOKEN_ENCRYPTION_KEY"])

    for name in SECRET_NAMES:
        print(f"Generated {name}: {generated[name]}")

    if not args.write:
        return

    if not os.path.exists(args.template):
        print(f"Error: {args.template} not found. Please ensure it exists.")
        sys.exit(1)

    existing = _read_env(args.env)
    with open(args.template, "r") as f:
        lines = f.read().splitlines()

    out = []
    for line in lines:
        name = line.partition("=")[0]
        if name in SECRET_NAMES:
            value = existing.get(name) or generated[name]
            out.append(f"{name}={value}")
        elif name in existing:
            out.append(f"{name}={existing[name]}")
        else:
            out.append(line)

    with open(args.env, "w") as f:
        f.write("\n".join(out) + "\n")

    kept = [n for n in SECRET_NAMES if existing.get(n)]
    print(f"Successfully wrote to {args.env}" + (f" (kept existing {', '.join(kept)})" if kept else ""))


if __name__ == "__main__":
    main()
