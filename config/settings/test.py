"""
With these settings, tests run faster.
"""

from .base import *  # noqa: F403
from .base import DATABASES
from .base import REST_FRAMEWORK
from .base import env

# GENERAL
# ------------------------------------------------------------------------------
# https://docs.djangoproject.com/en/dev/ref/settings/#secret-key
SECRET_KEY = env(
    "DJANGO_SECRET_KEY",
    default="Hx4nR8wK2pLm6TqZ0vB3yC7dF1gJ5sN9aE2uW8iO4kQ6tY0rM3xV7bP1cL5zD9hS",
)
# https://docs.djangoproject.com/en/dev/ref/settings/#test-runner
TEST_RUNNER = "django.test.runner.DiscoverRunner"
DATABASES["default"]["CONN_MAX_AGE"] = 0  # type: ignore[name-defined]
# https://docs.djangoproject.com/en/dev/ref/settings/#allowed-hosts
ALLOWED_HOSTS = ["localhost", "127.0.0.1", "testserver"]

# PASSWORDS
# ------------------------------------------------------------------------------
# https://docs.djangoproject.com/en/dev/ref/settings/#password-hashers
PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

# EMAIL
# ------------------------------------------------------------------------------
# https://docs.djangoproject.com/en/dev/ref/settings/#email-backend
EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"

# Celery
# ------------------------------------------------------------------------------
CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"

# Your stuff...
# ------------------------------------------------------------------------------
SITE_URL = "https://neuralpix.test"

# Unknown stored enum values are bugs in tests, not data to degrade around.
BILLING_STRICT_ENUMS = True
BILLING_DEFAULT_TIER = "free"

# Dummy PayOS credentials; tests inject an httpx.MockTransport.
PAYOS_CLIENT_ID = "test-client-id"
PAYOS_API_KEY = "test-api-key"
PAYOS_CHECKSUM_KEY = "test-checksum-key"
PAYOS_API_BASE_URL = "https://payos.test"
PAYOS_RETURN_URL = "https://neuralpix.test/payment/success"
PAYOS_CANCEL_URL = "https://neuralpix.test/payment/cancel"
PAYOS_TIMEOUT_SECONDS = 2.0

# Disable DRF throttling in tests to prevent rate limit failures during test runs
REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []  # type: ignore[name-defined]
REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}  # type: ignore[name-defined]
