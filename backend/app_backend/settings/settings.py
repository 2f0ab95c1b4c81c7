"""
Base Django settings for the Charity Drive ride backend.

Environment-specific modules (prod.py, test.py) import everything from here
and override what they need.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(os.path.join(BASE_DIR, '..', '.env'))

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-charity-drive-key")
DEBUG = os.getenv("DEBUG", "True").lower() in ("1", "true", "yes")
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "*").split(',')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # Third party
    'rest_framework',
    'corsheaders',
    'channels',

    # Local apps
    'drivers',
    'rides',
    'realtime',
]

MIDDLEWARE = [
    'corsheaders.middleware.CorsMiddleware',
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'app_backend.urls'

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

WSGI_APPLICATION = 'app_backend.wsgi.application'
ASGI_APPLICATION = 'app_backend.asgi.application'

# SQLite takes the write lock when a transaction begins so concurrent
# accept/cancel calls serialize instead of failing with "database is locked".
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.getenv("SQLITE_PATH", str(BASE_DIR / 'db.sqlite3')),
        'OPTIONS': {
            'transaction_mode': 'IMMEDIATE',
            'timeout': 20,
        },
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# Rides are anonymous: riders and drivers identify themselves per request.
REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.AllowAny',
    ],
    'UNAUTHENTICATED_USER': None,
}

CORS_ALLOW_ALL_ORIGINS = True

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    }
}

REDIS_URL = os.getenv("REDIS_URL", "")

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL or "memory://")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL or "cache+memory://")
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_ALWAYS_EAGER = os.getenv("CELERY_TASK_ALWAYS_EAGER", "False").lower() in ("1", "true", "yes")

# Pricing
FARE_BASE_RATE_PER_KM = float(os.getenv("FARE_BASE_RATE_PER_KM", "3.80"))
FALLBACK_AVERAGE_SPEED_KMH = float(os.getenv("FALLBACK_AVERAGE_SPEED_KMH", "25"))

# External routing / geocoding
GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY", "")
ROUTING_TIMEOUT_SECONDS = float(os.getenv("ROUTING_TIMEOUT_SECONDS", "5"))
NOMINATIM_BASE_URL = os.getenv("NOMINATIM_BASE_URL", "https://nominatim.openstreetmap.org")
GEOCODER_USER_AGENT = os.getenv("GEOCODER_USER_AGENT", "CharityDriveWebApp/1.0")
GEOCODER_TIMEOUT_SECONDS = float(os.getenv("GEOCODER_TIMEOUT_SECONDS", "5"))

# Simulated call / chat counterparts
CALL_AUTO_ANSWER_SECONDS = float(os.getenv("CALL_AUTO_ANSWER_SECONDS", "3"))
CHAT_AUTO_REPLY_ENABLED = os.getenv("CHAT_AUTO_REPLY_ENABLED", "False").lower() in ("1", "true", "yes")
CHAT_AUTO_REPLY_DELAY_SECONDS = float(os.getenv("CHAT_AUTO_REPLY_DELAY_SECONDS", "1.5"))

# Confirmation message (text generation)
GROQ_API_KEY = os.getenv("GROQ_API_KEY", "")
CONFIRMATION_MODEL = os.getenv("CONFIRMATION_MODEL", "llama-3.1-8b-instant")

RIDE_RETENTION_DAYS = int(os.getenv("RIDE_RETENTION_DAYS", "30"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} [{levelname}] {name}: {message}',
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
        'level': 'WARNING',
    },
    'loggers': {
        'django': {'handlers': ['console'], 'level': 'INFO', 'propagate': False},
        'rides': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'drivers': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'services': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'realtime': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'client': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
    },
}
