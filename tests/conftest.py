import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture(scope='session', autouse=True)
def fresh_test_db():
    """Run the whole session against a throwaway sqlite file.

    Tests share one file at .run/pytest_db.sqlite (models.init_db maps
    ':memory:' there too) so the Flask test client, the sweep and the test
    code see the same rows. The file is removed before and after the run.
    """
    run_dir = os.path.join(ROOT, '.run')
    os.makedirs(run_dir, exist_ok=True)
    db_file = os.path.join(run_dir, 'pytest_db.sqlite')
    os.environ.setdefault('DATABASE_FILE', db_file)
    # the sweep endpoint is open unless a test sets a secret
    os.environ.pop('CRON_SECRET', None)

    if os.path.exists(db_file):
        os.remove(db_file)
    yield
    if os.path.exists(db_file):
        os.remove(db_file)
