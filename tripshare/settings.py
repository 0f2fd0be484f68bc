"""
Django settings for tripshare project.

Values are read from environment variables where deployments are expected
to override them.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'django-insecure-tripshare-dev-key')

DEBUG = os.environ.get('DJANGO_DEBUG', 'true').lower() == 'true'

ALLOWED_HOSTS = os.environ.get('DJANGO_ALLOWED_HOSTS', '*').split(',')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'drf_spectacular',
    'channels',
    'tracking',
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

ROOT_URLCONF = 'tripshare.urls'

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

ASGI_APPLICATION = 'tripshare.asgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('DJANGO_DB_PATH', BASE_DIR / 'db.sqlite3'),
    }
}

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'DEFAULT_SCHEMA_CLASS': 'drf_spectacular.openapi.AutoSchema',
    # Trip records are readable by anyone holding the link.
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': ['rest_framework.permissions.AllowAny'],
    'UNAUTHENTICATED_USER': None,
}

SPECTACULAR_SETTINGS = {
    'TITLE': 'TripShare API',
    'DESCRIPTION': 'Live trip sharing: sharers publish progress, observers watch.',
    'VERSION': '1.0.0',
}

CHANNEL_LAYERS = {
    'default': {
        'BACKEND': 'channels.layers.InMemoryChannelLayer',
    },
}

# Trip sharing
TRIP_SHARE_BASE_URL = os.environ.get('TRIP_SHARE_BASE_URL', 'http://localhost:3000')
TRIP_RETENTION_SECONDS = float(os.environ.get('TRIP_RETENTION_SECONDS', 60 * 60))
TRIP_STORE_WRITE_TIMEOUT_SECONDS = float(os.environ.get('TRIP_STORE_WRITE_TIMEOUT_SECONDS', 10))
TRIP_ROUTE_SINUOSITY_FACTOR = float(os.environ.get('TRIP_ROUTE_SINUOSITY_FACTOR', 1.3))
TRIP_ARRIVAL_RADIUS_METERS = float(os.environ.get('TRIP_ARRIVAL_RADIUS_METERS', 30))
TRIP_STALE_AFTER_SECONDS = float(os.environ.get('TRIP_STALE_AFTER_SECONDS', 60))
TRIP_ABANDONED_AFTER_SECONDS = float(os.environ.get('TRIP_ABANDONED_AFTER_SECONDS', 24 * 60 * 60))
TRIP_STORE_BACKEND = os.environ.get('TRIP_STORE_BACKEND', 'tracking.store.DjangoTripStore')

# Unit the location sampler reports speed in: mps, kmh or mph.
LOCATION_SPEED_UNIT = os.environ.get('LOCATION_SPEED_UNIT', 'mps')

# Google Directions API
GOOGLE_MAPS_API_KEY = os.environ.get('GOOGLE_MAPS_API_KEY', '')

# Kafka change feed
KAFKA_ENABLED = os.environ.get('KAFKA_ENABLED', 'false').lower() == 'true'
KAFKA_BOOTSTRAP_SERVERS = os.environ.get('KAFKA_BOOTSTRAP_SERVERS', 'localhost:9092')
KAFKA_TRIP_TOPIC = os.environ.get('KAFKA_TRIP_TOPIC', 'trip-changes')

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
        'level': 'WARNING',
    },
    'loggers': {
        'tracking': {
            'handlers': ['console'],
            'level': os.environ.get('TRIP_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
