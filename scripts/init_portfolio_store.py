#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from portfolio_health.config import PORTFOLIO_DB_PATH, configure_logging  # noqa: E402
from portfolio_health.portfolio_store import (  # noqa: E402
    init_portfolio_store,
    list_import_jobs,
    list_import_records,
    verify_audit_chain,
)


def main() -> None:
    parser = argparse.ArgumentParser(description="Create or migrate the portfolio store.")
    parser.add_argument("--db", default=str(PORTFOLIO_DB_PATH), help="SQLite path (default: PH_DB_PATH).")
    args = parser.parse_args()
    configure_logging()

    db_path = Path(args.db)
    init_portfolio_store(db_path)
    payload = {
        "portfolio_db": str(db_path),
        "import_records": len(list_import_records(path=db_path, limit=1000)),
        "import_jobs": len(list_import_jobs(path=db_path, limit=1000)),
        "audit_chain": verify_audit_chain(path=db_path),
    }
    print(json.dumps(payload, ensure_ascii=True, indent=2))


if __name__ == "__main__":
    main()
