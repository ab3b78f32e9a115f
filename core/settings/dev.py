"""
Development settings
"""
from .base import *
import dj_database_url

DEBUG = True

ALLOWED_HOSTS = ['*']

# Database
DATABASES = {
    'default': dj_database_url.config(
        default=os.getenv('DATABASE_URL', f"sqlite:///{BASE_DIR / 'db.sqlite3'}"),
        conn_max_age=0,
    )
}

# SQLite takes the write lock when a transaction starts, so concurrent
# selections queue on the busy timeout instead of failing mid-transaction.
if DATABASES['default']['ENGINE'] == 'django.db.backends.sqlite3':
    DATABASES['default']['OPTIONS'] = {'transaction_mode': 'IMMEDIATE'}

CORS_ALLOW_ALL_ORIGINS = True
