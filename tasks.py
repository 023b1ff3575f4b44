from celery import Celery
from celery.schedules import crontab
import os
import logging
from dotenv import load_dotenv

# Ensure environment variables from .env are loaded in worker processes
load_dotenv()

from models import init_db
from store import StreakStore
from sweep import run_sweep

logger = logging.getLogger('flashstreak.tasks')

# Celery broker URL. Prefer explicit CELERY_BROKER if provided. Otherwise
# construct a Redis URL from REDIS_HOST/REDIS_PORT/REDIS_DB and optional
# REDIS_PASSWORD sourced from the environment (e.g., .env).
CELERY_BROKER = os.environ.get('CELERY_BROKER')
if not CELERY_BROKER:
    redis_host = os.environ.get('REDIS_HOST', 'localhost')
    redis_port = os.environ.get('REDIS_PORT', '6379')
    redis_db = os.environ.get('REDIS_DB', '0')
    redis_password = os.environ.get('REDIS_PASSWORD') or os.environ.get('REDIS_AUTH')
    if redis_password:
        # URL-encode the password portion in case it contains special chars
        from urllib.parse import quote_plus
        pw = quote_plus(redis_password)
        CELERY_BROKER = f'redis://:{pw}@{redis_host}:{redis_port}/{redis_db}'
    else:
        CELERY_BROKER = f'redis://{redis_host}:{redis_port}/{redis_db}'

celery_app = Celery('flashstreak', broker=CELERY_BROKER)

# Allow running tasks synchronously for local dev/testing by setting
# CELERY_EAGER=1 or by using a memory broker (memory://).
if os.environ.get('CELERY_EAGER', '0') == '1' or CELERY_BROKER.startswith('memory'):
    celery_app.conf.task_always_eager = True
    celery_app.conf.task_eager_propagates = True

# Run the streak sweep at the top of every hour (celery beat)
celery_app.conf.beat_schedule = {
    'check-streaks-hourly': {
        'task': 'tasks.check_streaks_task',
        'schedule': crontab(minute=0),
    },
}
celery_app.conf.timezone = 'UTC'


@celery_app.task(bind=True, name='tasks.check_streaks_task')
def check_streaks_task(self):
    init_db()
    summary = run_sweep(StreakStore())
    if not summary['success']:
        logger.warning('Streak sweep finished with %d errors', len(summary.get('errors', [])))
    return summary
