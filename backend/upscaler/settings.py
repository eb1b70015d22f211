"""
Django settings for the upscaler billing project.

Values are read from the environment; a ``.env`` file next to ``manage.py``
(or at the repository root) is loaded first for local development.
"""
import json
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / '.env')
load_dotenv(BASE_DIR.parent / '.env')


def _env_bool(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name, default):
    value = os.getenv(name)
    if value in (None, ''):
        return default
    return int(value)


def _env_float(name, default):
    value = os.getenv(name)
    if value in (None, ''):
        return default
    return float(value)


SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'django-insecure-upscaler-dev-key')

DEBUG = _env_bool('DJANGO_DEBUG', False)

ALLOWED_HOSTS = [host.strip() for host in os.getenv('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',') if host.strip()]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'django_filters',
    'accounts.apps.AccountConfig',
    'billing.apps.BillingConfig',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'upscaler.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'upscaler.wsgi.application'
ASGI_APPLICATION = 'upscaler.asgi.application'

# Database
# PostgreSQL when POSTGRES_DB is configured, SQLite otherwise.
if os.getenv('POSTGRES_DB'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.getenv('POSTGRES_DB'),
            'USER': os.getenv('POSTGRES_USER', 'postgres'),
            'PASSWORD': os.getenv('POSTGRES_PASSWORD', ''),
            'HOST': os.getenv('POSTGRES_HOST', 'localhost'),
            'PORT': os.getenv('POSTGRES_PORT', '5432'),
            'CONN_MAX_AGE': _env_int('POSTGRES_CONN_MAX_AGE', 60),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.getenv('SQLITE_PATH', str(BASE_DIR / 'db.sqlite3')),
        }
    }

AUTH_USER_MODEL = 'accounts.User'

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.BasicAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_FILTER_BACKENDS': [
        'django_filters.rest_framework.DjangoFilterBackend',
        'rest_framework.filters.OrderingFilter',
    ],
}

# Logging
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': LOG_LEVEL,
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': os.getenv('DJANGO_LOG_LEVEL', 'WARNING').upper(),
            'propagate': False,
        },
        'billing': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
    },
}

# Celery
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = _env_bool('CELERY_TASK_ALWAYS_EAGER', False)

# Stripe
STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY', '')
STRIPE_WEBHOOK_SECRET = os.getenv('STRIPE_WEBHOOK_SECRET', '')
STRIPE_API_VERSION = os.getenv('STRIPE_API_VERSION', '')
STRIPE_WEBHOOK_TOLERANCE_SECONDS = _env_int('STRIPE_WEBHOOK_TOLERANCE_SECONDS', 300)

# Shared secret expected in the x-cron-secret header of cron trigger endpoints.
CRON_SECRET = os.getenv('CRON_SECRET', '')

# Plan catalog keyed by Stripe price id.
FREE_TIER_NAME = os.getenv('FREE_TIER_NAME', 'Free')

BILLING_PLANS = {
    os.getenv('STRIPE_PRICE_HOBBY', 'price_hobby'): {
        'key': 'hobby',
        'name': 'Hobby',
        'credits_per_cycle': 200,
        'max_rollover': 1200,
    },
    os.getenv('STRIPE_PRICE_PRO', 'price_pro'): {
        'key': 'pro',
        'name': 'Pro',
        'credits_per_cycle': 1000,
        'max_rollover': 6000,
        'trial_credits': 100,
    },
    os.getenv('STRIPE_PRICE_BUSINESS', 'price_business'): {
        'key': 'business',
        'name': 'Business',
        'credits_per_cycle': 5000,
        'max_rollover': 30000,
    },
}

if os.getenv('BILLING_PLANS_JSON'):
    BILLING_PLANS = json.loads(os.getenv('BILLING_PLANS_JSON'))

BILLING_SIGNUP_BONUS_CREDITS = _env_int('BILLING_SIGNUP_BONUS_CREDITS', 0)

# "record" posts an expiry entry for credits dropped by the rollover cap,
# "drop" only grants up to the cap.
BILLING_ROLLOVER_OVERFLOW_POLICY = os.getenv('BILLING_ROLLOVER_OVERFLOW_POLICY', 'record')
BILLING_EXPIRE_CREDITS_ON_CANCEL = _env_bool('BILLING_EXPIRE_CREDITS_ON_CANCEL', True)

# Drift-correction jobs
BILLING_EXPIRATION_BATCH_SIZE = _env_int('BILLING_EXPIRATION_BATCH_SIZE', 100)
BILLING_RECONCILE_BATCH_SIZE = _env_int('BILLING_RECONCILE_BATCH_SIZE', 40)
BILLING_RECONCILE_THROTTLE_SECONDS = _env_float('BILLING_RECONCILE_THROTTLE_SECONDS', 0.1)
BILLING_RECONCILE_DRIFT_TOLERANCE_SECONDS = _env_int('BILLING_RECONCILE_DRIFT_TOLERANCE_SECONDS', 3600)
BILLING_RECONCILE_DISCOVER_REMOTE = _env_bool('BILLING_RECONCILE_DISCOVER_REMOTE', True)
BILLING_WEBHOOK_MAX_RETRIES = _env_int('BILLING_WEBHOOK_MAX_RETRIES', 3)
BILLING_WEBHOOK_RECOVERY_BATCH_SIZE = _env_int('BILLING_WEBHOOK_RECOVERY_BATCH_SIZE', 50)
BILLING_WEBHOOK_STALE_MINUTES = _env_int('BILLING_WEBHOOK_STALE_MINUTES', 15)
BILLING_WEBHOOK_RETENTION_DAYS = _env_int('BILLING_WEBHOOK_RETENTION_DAYS', 30)
