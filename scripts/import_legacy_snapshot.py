#!/usr/bin/env python3
"""
Импорт data.json старого бота в PostgreSQL (одна транзакция, затем файл переименовывается).
Запуск из корня проекта: python -m scripts.import_legacy_snapshot [path] [--dry-run] [--strict]
"""
import argparse
import json
import os
import sys

# корень проекта в PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import settings
from app.core.exceptions import ImportConsistencyError
from app.core.logging import configure_logging
from app.db.session import session_scope
from app.services.legacy_import.service import LegacyImporter


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Import the legacy JSON snapshot")
    parser.add_argument("path", nargs="?", default=settings.legacy_snapshot_path)
    parser.add_argument("--dry-run", action="store_true", help="import, then roll back; file is kept")
    parser.add_argument("--strict", action="store_true", help="fail instead of booking balance adjustments")
    args = parser.parse_args(argv)

    configure_logging()
    try:
        with session_scope() as db:
            report = LegacyImporter(db, strict=args.strict).run(args.path, dry_run=args.dry_run)
    except ImportConsistencyError as e:
        print(f"Импорт отменён: {e}", file=sys.stderr)
        return 1

    if report is None:
        print(f"Файл {args.path} не найден, импортировать нечего.")
        return 0
    print(json.dumps(report.as_dict(), ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
