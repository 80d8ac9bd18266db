import os
import tempfile

# Settings are cached on first import, so the environment has to be fixed
# before any project module is loaded.
os.environ["CYCLES_ENV"] = "test"
os.environ["SALT_ROUNDS"] = "4"
os.environ.setdefault("CYCLES_DATA_DIR", tempfile.mkdtemp(prefix="cycles-test-"))
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("EMAIL_HMAC_KEY", "test-hmac-key")
os.environ.setdefault("EMAIL_ENCRYPTION_KEY", "ab" * 32)
os.environ.setdefault("CYCLES_APP_BASE_URL", "http://testserver")
