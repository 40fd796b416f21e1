from pathlib import Path

from celery.schedules import crontab
from decouple import config, Csv
from kombu import Queue
import dj_database_url

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# Quick-start development settings - unsuitable for production
SECRET_KEY = config('SECRET_KEY', default='django-insecure-skorly-dev-key')

DEBUG = config('DEBUG', default=False, cast=bool)

ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1', cast=Csv())

# Application definition
INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # Local
    'tracker',
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

ROOT_URLCONF = 'skorly_project.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'skorly_project.wsgi.application'

# Database
# Uses DATABASE_URL from .env
DATABASES = {
    'default': dj_database_url.config(
        default=config('DATABASE_URL', default='sqlite:///db.sqlite3')
    )
}

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = config('TIME_ZONE', default='Asia/Kolkata')
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Logging
LOG_LEVEL = config('LOG_LEVEL', default='INFO')
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
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
        'tracker': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'celery': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}

# Pipeline tunables
QUEUE_CONCURRENCY = config('QUEUE_CONCURRENCY', default=5, cast=int)
QUEUE_RETRY_ATTEMPTS = config('QUEUE_RETRY_ATTEMPTS', default=3, cast=int)
QUEUE_RETRY_DELAY = config('QUEUE_RETRY_DELAY', default=5, cast=float)
QUEUE_JOB_TIMEOUT = config('QUEUE_JOB_TIMEOUT', default=60, cast=float)
SWEEP_LOCK_SECONDS = config('SWEEP_LOCK_SECONDS', default=6 * 60 * 60, cast=int)
WEEKLY_SWEEP_DAY_OF_WEEK = config('WEEKLY_SWEEP_DAY_OF_WEEK', default='0')
WEEKLY_SWEEP_HOUR = config('WEEKLY_SWEEP_HOUR', default='23')
WEEKLY_SWEEP_MINUTE = config('WEEKLY_SWEEP_MINUTE', default='59')

# Platform clients
PLATFORM_USER_AGENT = config('PLATFORM_USER_AGENT', default='Skorly-Platform-Tracker/1.0')
GITHUB_TOKEN = config('GITHUB_TOKEN', default='')

# Celery Configuration
CELERY_BROKER_URL = config('CELERY_BROKER_URL', default='redis://localhost:6379/0')
CELERY_RESULT_BACKEND = config('CELERY_RESULT_BACKEND', default='redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_DEFAULT_QUEUE = 'celery'
CELERY_TASK_QUEUES = (
    Queue('celery'),
    Queue('students'),
)
CELERY_TASK_ROUTES = {
    'tracker.tasks.process_student': {'queue': 'students'},
}
# Rate limiters live in worker memory, so all workers of a node share one
# process and one limiter per platform.
CELERY_WORKER_POOL = 'threads'
CELERY_WORKER_CONCURRENCY = QUEUE_CONCURRENCY
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_TASK_ACKS_LATE = True
CELERY_TASK_REJECT_ON_WORKER_LOST = True
CELERY_TASK_TRACK_STARTED = True
CELERY_BEAT_SCHEDULE = {
    'weekly-roster-sweep': {
        'task': 'tracker.tasks.weekly_roster_sweep',
        'schedule': crontab(
            minute=WEEKLY_SWEEP_MINUTE,
            hour=WEEKLY_SWEEP_HOUR,
            day_of_week=WEEKLY_SWEEP_DAY_OF_WEEK,
        ),
    },
}
