"""
Django settings for the podsync project.

Every value that differs between deployments is read from the environment;
a `.env` file at the repository root is loaded first.
"""
import os
from datetime import timedelta
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(os.path.join(BASE_DIR, '.env'))


def env_bool(name, default=False):
	value = os.getenv(name)
	if value is None:
		return default
	return value.strip().lower() in ('1', 'true', 'yes', 'on')


SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-podsync-development-key')

DEBUG = env_bool('DEBUG', False)

ALLOWED_HOSTS = [host.strip() for host in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if host.strip()]

INSTALLED_APPS = [
	'unfold',
	'django.contrib.admin',
	'django.contrib.auth',
	'django.contrib.contenttypes',
	'django.contrib.sessions',
	'django.contrib.messages',
	'django.contrib.staticfiles',
	'rest_framework',
	'rest_framework_simplejwt',
	'django_q',
	'core_service',
	'erp_service',
	'delivery_service',
	'offline_service',
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

ROOT_URLCONF = 'podsync.urls'

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

WSGI_APPLICATION = 'podsync.wsgi.application'

DATABASES = {
	'default': {
		'ENGINE': os.getenv('DB_ENGINE', 'django.db.backends.sqlite3'),
		'NAME': os.getenv('DB_NAME', str(BASE_DIR / 'db.sqlite3')),
		'USER': os.getenv('DB_USER', ''),
		'PASSWORD': os.getenv('DB_PASSWORD', ''),
		'HOST': os.getenv('DB_HOST', ''),
		'PORT': os.getenv('DB_PORT', ''),
	}
}

if os.getenv('REDIS_URL'):
	CACHES = {
		'default': {
			'BACKEND': 'django_redis.cache.RedisCache',
			'LOCATION': os.getenv('REDIS_URL'),
		}
	}
else:
	CACHES = {
		'default': {
			'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
			'LOCATION': 'podsync',
		}
	}

AUTH_USER_MODEL = 'core_service.CustomUser'

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
STATIC_ROOT = os.getenv('STATIC_ROOT', str(BASE_DIR / 'staticfiles'))
MEDIA_URL = '/media/'
MEDIA_ROOT = os.getenv('MEDIA_ROOT', str(BASE_DIR / 'media'))

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
	'DEFAULT_AUTHENTICATION_CLASSES': [
		'overrides.authenticate.CombinedAuthentication',
	],
	'DEFAULT_PERMISSION_CLASSES': [
		'rest_framework.permissions.IsAuthenticated',
	],
}

SIMPLE_JWT = {
	'ACCESS_TOKEN_LIFETIME': timedelta(minutes=int(os.getenv('JWT_ACCESS_MINUTES', '60'))),
	'REFRESH_TOKEN_LIFETIME': timedelta(days=int(os.getenv('JWT_REFRESH_DAYS', '7'))),
}

# Background workers (django-q, ORM broker)
Q_CLUSTER = {
	'name': 'podsync',
	'workers': int(os.getenv('Q_WORKERS', '4')),
	'timeout': int(os.getenv('Q_TIMEOUT', '300')),
	'retry': int(os.getenv('Q_RETRY', '600')),
	'orm': 'default',
	'catch_up': False,
	'sync': env_bool('Q_SYNC', False),
}

UNFOLD = {
	'SITE_TITLE': 'PODSync',
	'SITE_HEADER': 'Proof of Delivery',
}

# ERP integration
ERP_URL = os.getenv('ERP_URL', 'http://localhost:8080/api/index.php')
ERP_API_KEY = os.getenv('ERP_API_KEY', '')
ERP_TIMEOUT = float(os.getenv('ERP_TIMEOUT', '10'))
ERP_SYNC_MAX_ATTEMPTS = int(os.getenv('ERP_SYNC_MAX_ATTEMPTS', '3'))
ERP_SYNC_BACKOFF_BASE = float(os.getenv('ERP_SYNC_BACKOFF_BASE', '2'))
ERP_SYNC_BACKOFF_CAP = float(os.getenv('ERP_SYNC_BACKOFF_CAP', '60'))
ERP_SYNC_LOCK_TIMEOUT = int(os.getenv('ERP_SYNC_LOCK_TIMEOUT', '600'))

# Proof of delivery capture
SIGNATURE_MIN_QUALITY = float(os.getenv('SIGNATURE_MIN_QUALITY', '0.70'))
SIGNATURE_CANVAS_WIDTH = 400
SIGNATURE_CANVAS_HEIGHT = 200
PHOTO_MAX_SIZE = int(os.getenv('PHOTO_MAX_SIZE', str(5 * 1024 * 1024)))
PHOTO_THUMBNAIL_SIZE = (300, 200)
PHOTO_ALLOWED_FORMATS = ['JPEG', 'PNG', 'GIF']

# Offline capture queue
OFFLINE_QUEUE_TTL_HOURS = int(os.getenv('OFFLINE_QUEUE_TTL_HOURS', '24'))
OFFLINE_QUEUE_MAX_ATTEMPTS = int(os.getenv('OFFLINE_QUEUE_MAX_ATTEMPTS', '3'))
OFFLINE_QUEUE_STALE_MINUTES = int(os.getenv('OFFLINE_QUEUE_STALE_MINUTES', '10'))
OFFLINE_QUEUE_RETENTION_DAYS = int(os.getenv('OFFLINE_QUEUE_RETENTION_DAYS', '30'))

# Live status broadcasting
BROADCAST_SUBSCRIBER_QUEUE_SIZE = int(os.getenv('BROADCAST_SUBSCRIBER_QUEUE_SIZE', '100'))
BROADCAST_RELAY = env_bool('BROADCAST_RELAY', False)
BROADCAST_KEEPALIVE_SECONDS = 15

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
		'level': os.getenv('LOG_LEVEL', 'INFO'),
	},
	'loggers': {
		'django': {
			'handlers': ['console'],
			'level': os.getenv('DJANGO_LOG_LEVEL', 'WARNING'),
			'propagate': False,
		},
	},
}
