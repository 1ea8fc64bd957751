from pathlib import Path
import os
import sys

import environ
import datetime
from django.core.exceptions import ImproperlyConfigured

BASE_DIR = Path(__file__).resolve().parent.parent

env = environ.Env(
    DEBUG=(bool, False),
)

# Optional local env file support (docker-compose already sets env vars).
environ.Env.read_env(os.path.join(BASE_DIR, ".env"))

DEBUG = env.bool("DEBUG", default=False)

# Both `manage.py test` and pytest-django load these settings; neither needs
# production secrets.
TESTING = (len(sys.argv) > 1 and sys.argv[1] == "test") or "pytest" in sys.modules

SECRET_KEY = env(
    "SECRET_KEY",
    default="django-insecure-dev-only-change-me",
)
if not DEBUG and not TESTING and SECRET_KEY.startswith("django-insecure-dev-only"):
    raise ImproperlyConfigured("SECRET_KEY must be set in production.")

_dev_allowed_hosts = ["localhost", "127.0.0.1", "[::1]"]
ALLOWED_HOSTS = env.list(
    "ALLOWED_HOSTS",
    default=_dev_allowed_hosts if DEBUG or TESTING else [],
)
if not DEBUG and not TESTING and not ALLOWED_HOSTS:
    raise ImproperlyConfigured("ALLOWED_HOSTS must be set in production.")

INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'post_office',
    'voting',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'

# Database
# https://docs.djangoproject.com/en/5.0/ref/settings/#databases
DATABASES = {
    'default': {
        **env.db(
            'DATABASE_URL',
            default=f'sqlite:///{BASE_DIR / "db.sqlite3"}',
        ),
    }
}

# Email
# In DEBUG, docker-compose provides EMAIL_URL pointing to Mailhog.
EMAIL_CONFIG = env.email_url('EMAIL_URL', default=None)
if EMAIL_CONFIG:
    globals().update(EMAIL_CONFIG)

DEFAULT_FROM_EMAIL = env('DEFAULT_FROM_EMAIL', default='elections@localhost')

# Queue all Django mail through django-post_office.
EMAIL_BACKEND = 'post_office.EmailBackend'

# - DEBUG: deliver immediately via SMTP to Mailhog.
# - non-DEBUG: queue, then deliver with `python manage.py send_queued_mail`.
POST_OFFICE = {
    'DEFAULT_PRIORITY': 'now' if DEBUG else 'medium',
    'MESSAGE_ID_ENABLED': True,
    'MAX_RETRIES': 4,
    'RETRY_INTERVAL': datetime.timedelta(minutes=5),
    'BACKENDS': {
        'default': 'django.core.mail.backends.smtp.EmailBackend',
    },
}

# Internationalization
# https://docs.djangoproject.com/en/5.0/topics/i18n/
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Security
# Keep these production-oriented but configurable; many deployments sit behind
# a TLS-terminating proxy/load balancer.
if not DEBUG:
    if env.bool("SECURE_PROXY_SSL", default=True):
        SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

    SECURE_SSL_REDIRECT = env.bool("SECURE_SSL_REDIRECT", default=False)
    SESSION_COOKIE_SECURE = env.bool("SESSION_COOKIE_SECURE", default=not TESTING)
    CSRF_COOKIE_SECURE = env.bool("CSRF_COOKIE_SECURE", default=not TESTING)
    SECURE_CONTENT_TYPE_NOSNIFF = True
    SECURE_REFERRER_POLICY = env("SECURE_REFERRER_POLICY", default="same-origin")

    CSRF_TRUSTED_ORIGINS = env.list("CSRF_TRUSTED_ORIGINS", default=[])

# Default primary key field type
# https://docs.djangoproject.com/en/5.0/ref/settings/#default-auto-field
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Caching
# Voting credentials live in their own cache so they can be moved to a shared
# backend (e.g. Redis) without touching anything else. They are a
# re-authentication convenience; losing them on restart is acceptable.
CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'default',
        'TIMEOUT': 300,
    },
    'voting_credentials': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'voting-credentials',
        'TIMEOUT': None,
    },
}

# Election engine
ELECTION_SWEEP_INTERVAL_SECONDS = env.int("ELECTION_SWEEP_INTERVAL_SECONDS", default=60)

VOTING_CREDENTIAL_CACHE_ALIAS = env("VOTING_CREDENTIAL_CACHE_ALIAS", default="voting_credentials")
VOTING_CREDENTIAL_TTL_SECONDS = env.int("VOTING_CREDENTIAL_TTL_SECONDS", default=60 * 60 * 24)
VOTING_CREDENTIAL_LENGTH = env.int("VOTING_CREDENTIAL_LENGTH", default=8)
# Failed verifications allowed before a credential is discarded. 0 (the default)
# lets a voter retry until the credential expires.
VOTING_CREDENTIAL_MAX_ATTEMPTS = env.int("VOTING_CREDENTIAL_MAX_ATTEMPTS", default=0)

CHALLENGE_CODE_TTL_SECONDS = env.int("CHALLENGE_CODE_TTL_SECONDS", default=60 * 10)
CHALLENGE_CODE_MAX_ATTEMPTS = env.int("CHALLENGE_CODE_MAX_ATTEMPTS", default=5)

VOTE_VIEW_LIMIT = 2

VOTING_CREDENTIAL_EMAIL_TEMPLATE_NAME = "voting-credential"
RESULTS_DECLARED_EMAIL_TEMPLATE_NAME = "election-results-declared"
CHALLENGE_CODE_EMAIL_TEMPLATE_NAME = "challenge-code"
VOTE_CONFIRMATION_EMAIL_TEMPLATE_NAME = "vote-confirmation"

ELECTION_COMMITTEE_EMAIL = env("ELECTION_COMMITTEE_EMAIL", default=DEFAULT_FROM_EMAIL)

# Logging
# Ensure app logs are visible in container stdout.
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'filters': {
        'health_endpoint': {
            '()': 'config.logging_filters.HealthEndpointFilter',
        },
    },
    'formatters': {
        'console': {
            'format': '[{asctime}] {levelname} {name}: {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'console',
            'filters': ['health_endpoint'],
        },
    },
    'loggers': {
        # Our app
        'voting': {
            'handlers': ['console'],
            'level': 'DEBUG' if DEBUG else 'INFO',
            'propagate': False,
        },
        # Django request errors still visible
        'django.request': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
        # Access logs from `runserver`.
        'django.server': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
