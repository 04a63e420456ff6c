import os

# Default env for app settings in tests.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ.setdefault("TOKEN_SIGNING_SECRET", "test-signing-secret-with-enough-length-0123456789")
os.environ.setdefault("API_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("EMAIL_FROM", "digests@example.com")
os.environ.setdefault("RESEND_API_KEY", "re_test_key")
