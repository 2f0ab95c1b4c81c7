from .settings import *

DEBUG = False
SECRET_KEY = "test-only-secret"

# File-backed so threaded tests share one database with real locking.
DATABASES['default']['TEST'] = {
    'NAME': str(BASE_DIR / 'test_charity_drive.sqlite3'),
}

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    }
}

REDIS_URL = ""
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"
# Tasks are enqueued on the in-memory broker and never executed; tests call them directly.
CELERY_TASK_ALWAYS_EAGER = False

GOOGLE_MAPS_API_KEY = ""
GROQ_API_KEY = ""
CHAT_AUTO_REPLY_ENABLED = False

LOG_LEVEL = "WARNING"
LOGGING['loggers']['rides']['level'] = LOG_LEVEL
LOGGING['loggers']['services']['level'] = LOG_LEVEL
LOGGING['loggers']['realtime']['level'] = LOG_LEVEL
