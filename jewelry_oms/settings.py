"""
Jewelry Storefront OMS - Returns, Refunds & Courier Sync
Django Settings Configuration
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Security
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-change-this')
DEBUG = os.getenv('DEBUG', 'True') == 'True'
ALLOWED_HOSTS = ['*']


# ============================================================
# APPLICATION DEFINITION
# ============================================================

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # Third party apps
    'rest_framework',           # Django REST Framework for APIs
    'drf_spectacular',          # Auto-generated API documentation

    # Our apps
    'orders',                   # Orders, shipments and forward courier webhooks
    'returns',                  # Returns, refunds and reverse pickup webhooks
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

ROOT_URLCONF = 'jewelry_oms.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [BASE_DIR / 'templates'],
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

WSGI_APPLICATION = 'jewelry_oms.wsgi.application'


# ============================================================
# DATABASE CONFIGURATION
# ============================================================

DATABASES = {
    'default': {
        'ENGINE': os.getenv('DB_ENGINE', 'django.db.backends.sqlite3'),
        'NAME': os.getenv('DB_NAME', BASE_DIR / 'db.sqlite3'),
    }
}


# ============================================================
# PASSWORD VALIDATION
# ============================================================

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]


# ============================================================
# INTERNATIONALIZATION
# ============================================================

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'Asia/Kolkata'
USE_I18N = True
USE_TZ = True


# ============================================================
# STATIC FILES
# ============================================================

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'


# ============================================================
# DJANGO REST FRAMEWORK
# ============================================================

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.BasicAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],

    # Default throttle rates (rate limiting)
    'DEFAULT_THROTTLE_CLASSES': [
        'rest_framework.throttling.UserRateThrottle',
    ],
    'DEFAULT_THROTTLE_RATES': {
        'user': '1000/hour',                # General API rate limit
    },

    # Default renderer - JSON responses
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
        'rest_framework.renderers.BrowsableAPIRenderer',
    ],

    'DEFAULT_SCHEMA_CLASS': 'drf_spectacular.openapi.AutoSchema',

    # Date/time format
    'DATETIME_FORMAT': '%Y-%m-%d %H:%M:%S',
}

SPECTACULAR_SETTINGS = {
    'TITLE': 'Jewelry Storefront OMS API',
    'DESCRIPTION': 'Returns, refunds and courier status synchronisation',
    'VERSION': '1.0.0',
}


# ============================================================
# CACHE CONFIGURATION
# ============================================================
# Local memory cache backs DRF throttling in development

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'jewelry-oms-cache',
        'TIMEOUT': 300,
    }
}


# ============================================================
# CELERY CONFIGURATION
# ============================================================
# Used for admin notifications and manual re-runs of stalled refund automation

CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://127.0.0.1:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_BROKER_URL', 'redis://127.0.0.1:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = 'Asia/Kolkata'

CELERY_TASK_ACKS_LATE = True
CELERY_TASK_REJECT_ON_WORKER_LOST = True


# ============================================================
# EMAIL
# ============================================================

EMAIL_BACKEND = os.getenv('EMAIL_BACKEND', 'django.core.mail.backends.console.EmailBackend')
DEFAULT_FROM_EMAIL = os.getenv('DEFAULT_FROM_EMAIL', 'returns@jewelry-oms.local')
RETURNS_ADMIN_EMAILS = [
    email.strip()
    for email in os.getenv('RETURNS_ADMIN_EMAILS', '').split(',')
    if email.strip()
]


# ============================================================
# COURIER (SHIPROCKET) WEBHOOKS
# ============================================================
# AUTH_MODE is 'enforced' or 'disabled'. Disabled skips HMAC verification and
# is meant for local development only.

SHIPROCKET_WEBHOOK = {
    'AUTH_MODE': os.getenv('SHIPROCKET_WEBHOOK_AUTH_MODE', 'enforced'),
    'SECRET': os.getenv('SHIPROCKET_WEBHOOK_SECRET', ''),
}


# ============================================================
# PAYMENT GATEWAY (RAZORPAY)
# ============================================================

RAZORPAY = {
    'KEY_ID': os.getenv('RAZORPAY_KEY_ID', ''),
    'KEY_SECRET': os.getenv('RAZORPAY_KEY_SECRET', ''),
}


# ============================================================
# LOGGING CONFIGURATION
# ============================================================

LOG_DIR = BASE_DIR / 'logs'
LOG_DIR.mkdir(exist_ok=True)

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'json': {
            'format': '%(asctime)s %(levelname)s %(name)s %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'json',
        },
        'file': {
            'class': 'logging.FileHandler',
            'filename': LOG_DIR / 'returns.log',
            'formatter': 'json',
        },
    },
    'loggers': {
        'orders': {
            'handlers': ['console', 'file'],
            'level': 'INFO',
            'propagate': True,
        },
        'returns': {
            'handlers': ['console', 'file'],
            'level': 'INFO',
            'propagate': True,
        },
    },
}


# ============================================================
# RETURN MODULE BUSINESS CONFIGURATION
# ============================================================

RETURN_POLICY = {
    'RETURN_WINDOW_DAYS': 10,                   # Jewelry: 10 days from delivery
    'MIN_ORDER_AMOUNT': 100,                    # Rs.100 minimum order value for returns
    'AUTO_REFUND_CONDITIONS': ['unused', 'lightly_used'],
    'MANUAL_RETURN_WINDOW_DAYS': 30,            # Extended window recorded on admin returns
    'RETURN_SHIPPING_COST': 0,                  # Deducted from customer refunds
    'RESTOCKING_FEE': 0,
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
