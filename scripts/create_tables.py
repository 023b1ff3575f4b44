"""Create (or recreate) the flashcard database tables.

Binds the PonyORM models using the same environment variables as the web
app and the celery worker (DATABASE_URL, PG*, DATABASE_FILE) and creates any
missing tables.

Usage:
  python scripts/create_tables.py
  python scripts/create_tables.py --drop        # DESTRUCTIVE, asks first
  python scripts/create_tables.py --drop --yes  # no prompt (CI, fresh containers)
"""

import os
import sys
import argparse

# `python scripts/create_tables.py` puts scripts/ on sys.path, not the project
# root; add it so `from models import ...` resolves.
_HERE = os.path.dirname(__file__)
_PROJECT_ROOT = os.path.abspath(os.path.join(_HERE, '..'))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from models import init_db, db


def drop_all_tables():
    """Drop every mapped table together with its rows."""
    init_db(create_tables=False)
    db.drop_all_tables(with_all_data=True)
    print('Dropped all tables')


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Create database tables for the flashcard app',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--drop', action='store_true',
                        help='Drop all existing tables before creating new ones (DESTRUCTIVE)')
    parser.add_argument('--yes', action='store_true', help='Do not ask for confirmation')
    args = parser.parse_args(argv)

    if args.drop:
        if not args.yes:
            print('WARNING: --drop will DELETE ALL DATA from the database!')
            response = input('Are you sure you want to continue? (yes/no): ')
            if response.lower() != 'yes':
                print('Aborted.')
                return 1
        drop_all_tables()
        # tables were dropped after mapping; recreate them on the bound db
        db.create_tables()
    else:
        init_db(create_tables=True)
    print('Done. Pony provider:', getattr(db, 'provider', None))
    return 0


if __name__ == '__main__':
    sys.exit(main())
