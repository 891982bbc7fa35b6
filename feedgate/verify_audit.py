#!/usr/bin/env python3
"""
verify_audit.py: verify the hash-chained security audit log.

    python -m feedgate.verify_audit audit/security_audit.jsonl --state audit/security_audit.state

Exit codes:
- 0: OK
- 1: Verification failed
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from .audit import check_log_chain


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Verify feedgate security audit log integrity (JSONL hash chain).")
    p.add_argument(
        "log",
        type=Path,
        help="Path to audit JSONL file (e.g. audit/security_audit.jsonl)",
    )
    p.add_argument(
        "--state",
        type=Path,
        default=None,
        help="Optional state file containing last hash (e.g. audit/security_audit.state)",
    )
    args = p.parse_args(argv)

    if not args.log.exists():
        print(f"FAIL: log not found: {args.log}", file=sys.stderr)
        return 1

    res = check_log_chain(args.log, state_path=args.state)

    out = sys.stdout if res.ok else sys.stderr
    print("OK" if res.ok else "FAIL", file=out)
    if not res.ok:
        print(res.message, file=out)
    print(f"lines={res.lines}", file=out)
    if res.last_hash:
        print(f"last_hash={res.last_hash}", file=out)
    return 0 if res.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
