#!/usr/bin/env python3
"""
Generate the caller token secret, or issue caller tokens signed with it.

Usage:
    python scripts/generate_token.py                   # New 32-byte secret
    python scripts/generate_token.py 48                # New 48-byte secret
    python scripts/generate_token.py --env             # Secret in .env format
    python scripts/generate_token.py --issue hero_42   # Token for caller hero_42
                                                       # (signed with CALLER_TOKEN_SECRET)

Example output:
    CALLER_TOKEN_SECRET=Yx8kL2mN9pQ4rS6tU0vW3xZ5aB7cD1eF
    hero_42.5f1c0e...
"""
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from herodispatch.transport.security import generate_secret, issue_caller_token  # noqa: E402


def main() -> int:
    length = 32
    env_format = False
    caller_id = None

    args = sys.argv[1:]
    while args:
        arg = args.pop(0)
        if arg == "--env":
            env_format = True
        elif arg == "--issue":
            if not args:
                print("--issue needs a caller id", file=sys.stderr)
                return 2
            caller_id = args.pop(0)
        elif arg.isdigit():
            length = int(arg)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return 0

    if caller_id is not None:
        secret = os.environ.get("CALLER_TOKEN_SECRET")
        if not secret:
            print("CALLER_TOKEN_SECRET is not set", file=sys.stderr)
            return 1
        try:
            print(issue_caller_token(secret, caller_id))
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return 2
        return 0

    if env_format:
        print(f"CALLER_TOKEN_SECRET={generate_secret(length)}")
    else:
        print(generate_secret(length))
    return 0


if __name__ == "__main__":
    sys.exit(main())
