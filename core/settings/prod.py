"""
Production settings
"""
from .base import *
import dj_database_url

DEBUG = False

# Database
DATABASES = {
    'default': dj_database_url.config(
        default=os.getenv('DATABASE_URL'),
        conn_max_age=600,
        conn_health_checks=True,
    )
}

# Security settings
SECURE_SSL_REDIRECT = os.getenv('SECURE_SSL_REDIRECT', 'False') == 'True'
SESSION_COOKIE_SECURE = True
CSRF_COOKIE_SECURE = True
SECURE_CONTENT_TYPE_NOSNIFF = True
X_FRAME_OPTIONS = 'DENY'

ENABLE_CREDIT_EXPIRY_SCHEDULER = os.getenv('ENABLE_CREDIT_EXPIRY_SCHEDULER', 'True') == 'True'
