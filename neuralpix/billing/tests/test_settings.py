"""
Production email settings.

The production module mutates the shared settings lists and dicts it
imports from base, so it is loaded in a child interpreter rather than in
the test process.
"""

import json
import os
import subprocess
import sys
from pathlib import Path

from django.test import SimpleTestCase

ROOT_DIR = Path(__file__).resolve().parents[3]

SCRIPT = """
import json
from config.settings import production as s
print(json.dumps({
    "backend": s.EMAIL_BACKEND,
    "apps": s.INSTALLED_APPS,
    "anymail": getattr(s, "ANYMAIL", None),
}))
"""


def load_production_settings(**overrides) -> dict:
    env = {
        key: value
        for key, value in os.environ.items()
        if key not in {"POSTMARK_SERVER_TOKEN", "SENTRY_DSN", "DJANGO_READ_DOT_ENV_FILE"}
    }
    env.update(
        DJANGO_SECRET_KEY="production-settings-test-key",
        DJANGO_ALLOWED_HOSTS="api.neuralpix.test",
        PAYOS_CLIENT_ID="client",
        PAYOS_API_KEY="api",
        PAYOS_CHECKSUM_KEY="checksum",
        **overrides,
    )
    result = subprocess.run(
        [sys.executable, "-c", SCRIPT],
        cwd=ROOT_DIR,
        env=env,
        capture_output=True,
        text=True,
        timeout=60,
        check=False,
    )
    if result.returncode:
        raise AssertionError(result.stderr)
    return json.loads(result.stdout.strip().splitlines()[-1])


class ProductionEmailSettingsTests(SimpleTestCase):
    def test_postmark_backend_when_token_is_set(self):
        loaded = load_production_settings(POSTMARK_SERVER_TOKEN="pm-token")

        self.assertEqual(loaded["backend"], "anymail.backends.postmark.EmailBackend")
        self.assertEqual(loaded["anymail"], {"POSTMARK_SERVER_TOKEN": "pm-token"})
        self.assertIn("anymail", loaded["apps"])

    def test_console_backend_without_token(self):
        loaded = load_production_settings()

        self.assertEqual(loaded["backend"], "django.core.mail.backends.console.EmailBackend")
        self.assertIsNone(loaded["anymail"])
