"""
Pytest configuration for portal_oauth. In-memory SQLite and a throwaway signing key,
set before any portal_oauth module reads its config.
"""
import os
import tempfile

import pytest

# In-memory SQLite; database.py uses StaticPool so all sessions share the same DB
os.environ["PORTAL_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["PORTAL_SIGNING_KEY_PATH"] = os.path.join(tempfile.mkdtemp(prefix="portal-oauth-"), "signing_key.pem")
os.environ["PORTAL_FRONTEND_URL"] = "http://localhost:5173"
os.environ["PORTAL_ISSUER"] = "http://127.0.0.1:5000"
# Keep seeding out of tests
for _name in list(os.environ):
    if _name.startswith("PORTAL_SEED_"):
        del os.environ[_name]


@pytest.fixture(autouse=True)
def _fresh_rate_limits():
    from portal_oauth import rate_limit

    rate_limit.reset()
    yield
    rate_limit.reset()
