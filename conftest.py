"""
Shared test configuration and fixtures
"""

import pytest

from context_auth.db.fingerprints import FingerprintStore
from context_auth.models.models import DeviceClass, Fingerprint, ParsedUserAgent
from context_auth.services.context_auth_service import ContextAuthService
from context_auth.utils.crypto import FieldCipher

TEST_KEY_V1 = bytes(range(32))
TEST_INDEX_KEY = b"\x07" * 32

CHROME_WINDOWS_UA = ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                     "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36")
SAFARI_IPHONE_UA = ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
                    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1")


@pytest.fixture
def cipher():
    """Deterministic keys so tests can reopen what they wrote"""
    return FieldCipher({"v1": TEST_KEY_V1}, "v1", index_key=TEST_INDEX_KEY)

@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "context-auth-test.db")

@pytest.fixture
async def store(db_path, cipher):
    s = FingerprintStore(db_path, cipher)
    await s.init()
    yield s
    await s.close()

@pytest.fixture
def service(store):
    return ContextAuthService(store, geolocation=None, max_unverified_attempts=3)

@pytest.fixture
def canonical_fp():
    """Baseline a user verified their email from"""
    return Fingerprint(
        network_origin="1.2.3.4",
        country="US",
        city="NYC",
        browser="Chrome 120",
        platform="Win32",
        os="Windows",
        device="PC",
        device_class=DeviceClass.DESKTOP,
    )

@pytest.fixture
def paris_fp(canonical_fp):
    """Same machine, different network and location"""
    return Fingerprint(
        network_origin="9.9.9.9",
        country="FR",
        city="Paris",
        browser=canonical_fp.browser,
        platform=canonical_fp.platform,
        os=canonical_fp.os,
        device=canonical_fp.device,
        device_class=canonical_fp.device_class,
    )

@pytest.fixture
def chrome_desktop_ua():
    return ParsedUserAgent(
        raw=CHROME_WINDOWS_UA,
        browser="Chrome",
        version="120",
        platform="Win32",
        os="Windows",
        device="PC",
        is_desktop=True,
    )

@pytest.fixture
def fake_geolocation():
    """Stand-in for the ip-api.com lookup"""
    table = {
        "1.2.3.4": {"country_code": "US", "country": "United States", "city": "NYC"},
        "9.9.9.9": {"country_code": "FR", "country": "France", "city": "Paris"},
    }
    return lambda ip: table.get(ip)
