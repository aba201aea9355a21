#!/usr/bin/env python3
"""
Replay the audit hash chain from genesis and report the first broken link.

Usage:
    python scripts/verify_audit_chain.py [--database-url URL]

Without ``--database-url`` the GOVFLOW_DATABASE_URL setting is used.
Prints the verification result as JSON.  Exit status is 0 when the chain
is intact and 1 when it is broken.
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from govflow_kernel.db.engine import (
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from govflow_kernel.services.auditor_service import AuditorService
from govflow_kernel.settings import GovflowSettings


def verify(database_url: str) -> dict:
    init_engine_from_url(database_url)
    try:
        with session_scope(get_session_factory()) as session:
            return AuditorService(session).verify_integrity().to_dict()
    finally:
        reset_engine()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Verify the audit event hash chain.")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy URL (defaults to GOVFLOW_DATABASE_URL)",
    )
    args = parser.parse_args(argv)

    url = args.database_url or GovflowSettings.from_env().database_url
    result = verify(url)
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0 if result["ok"] else 1


if __name__ == "__main__":
    sys.exit(main())
