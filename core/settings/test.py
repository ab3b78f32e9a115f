"""
Test settings
"""
from .base import *
import dj_database_url

DEBUG = False

# TEST_DATABASE_URL points the suite at PostgreSQL to run the locking tests
DATABASES = {
    'default': dj_database_url.config(
        env='TEST_DATABASE_URL',
        default=f"sqlite:///{BASE_DIR / 'test_db.sqlite3'}",
    )
}

if DATABASES['default']['ENGINE'] == 'django.db.backends.sqlite3':
    # A file database so threaded tests share one database with real locking
    DATABASES['default']['OPTIONS'] = {'transaction_mode': 'IMMEDIATE'}
    DATABASES['default']['TEST'] = {'NAME': str(BASE_DIR / 'test_raffle.sqlite3')}

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
    }
}

REST_FRAMEWORK = {
    **REST_FRAMEWORK,
    'DEFAULT_THROTTLE_RATES': {
        'credits': '1000/min',
        'allocation': '1000/min',
    },
}

ENABLE_CREDIT_EXPIRY_SCHEDULER = False

RAFFLE_SSE_HEARTBEAT_SECONDS = 1
RAFFLE_SSE_MAX_SECONDS = 2

LOGGING['loggers']['apps']['level'] = 'CRITICAL'
