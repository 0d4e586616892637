"""
Key Rotation Manager Tests.

============================================================
PURPOSE
============================================================
Rotation, exhaustion, recovery policy and credential expiry for the
quota-bound provider's key pool.
============================================================
"""

import base64
import json
import threading

import pytest

from market_data.exceptions import ConfigurationError, ProviderExhaustedError
from market_data.key_manager import (
    KeyRecoveryPolicy,
    KeyRotationManager,
    is_quota_error,
    jwt_expiry,
    load_keys_from_env,
    mask_key,
)


def make_jwt(exp: float) -> str:
    def encode(obj):
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")
    return f"{encode({'alg': 'HS256', 'typ': 'JWT'})}.{encode({'exp': exp})}.signature"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now
    
    def __call__(self) -> float:
        return self.now


# ============================================================
# ROTATION TESTS
# ============================================================

class TestRotation:
    """Tests for key selection and rotation."""
    
    def test_starts_with_first_key(self):
        """Test the pool serves key 1 first."""
        manager = KeyRotationManager(["k1", "k2", "k3"])
        
        assert manager.acquire() == (0, "k1")
    
    def test_two_exhausted_serves_third(self):
        """Test keys 1 and 2 exhausted leaves key 3 active."""
        manager = KeyRotationManager(["k1", "k2", "k3"])
        
        manager.mark_exhausted(0)
        manager.mark_exhausted(1)
        
        assert manager.acquire() == (2, "k3")
    
    def test_all_exhausted_fails_fast(self):
        """Test exhausted pool raises ProviderExhaustedError."""
        manager = KeyRotationManager(["k1", "k2", "k3"])
        for i in range(3):
            manager.mark_exhausted(i)
        
        with pytest.raises(ProviderExhaustedError) as exc_info:
            manager.acquire()
        
        assert exc_info.value.pool_size == 3
    
    def test_mark_exhausted_reports_remaining(self):
        """Test mark_exhausted returns False once nothing is left."""
        manager = KeyRotationManager(["k1", "k2"])
        
        assert manager.mark_exhausted(0) is True
        assert manager.mark_exhausted(1) is False
    
    def test_rotation_wraps_around(self):
        """Test rotation continues from the cursor modulo pool size."""
        manager = KeyRotationManager(["k1", "k2", "k3"])
        manager.mark_exhausted(1)
        manager.mark_exhausted(0)
        
        assert manager.acquire() == (2, "k3")
    
    def test_duplicate_report_does_not_skip_valid_key(self):
        """Test two failures for the same key advance the cursor once."""
        manager = KeyRotationManager(["k1", "k2", "k3"])
        
        manager.mark_exhausted(0)
        manager.mark_exhausted(0)
        
        assert manager.acquire() == (1, "k2")
    
    def test_stale_report_does_not_move_cursor(self):
        """Test a late failure for an old key leaves the cursor alone."""
        manager = KeyRotationManager(["k1", "k2", "k3"])
        manager.mark_exhausted(0)
        assert manager.current_index == 1
        
        manager.mark_exhausted(2)
        
        assert manager.current_index == 1
        assert manager.acquire() == (1, "k2")
    
    def test_concurrent_reports_advance_once(self):
        """Test many threads reporting the same key advance the cursor once."""
        manager = KeyRotationManager(["k1", "k2", "k3"])
        barrier = threading.Barrier(8)
        
        def report():
            barrier.wait()
            manager.mark_exhausted(0)
        
        threads = [threading.Thread(target=report) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        
        assert manager.acquire() == (1, "k2")
        assert manager.status()["rotation_count"] == 1
    
    def test_reset(self):
        """Test reset clears exhaustion and returns to key 1."""
        manager = KeyRotationManager(["k1", "k2"])
        manager.mark_exhausted(0)
        manager.mark_exhausted(1)
        
        manager.reset()
        
        assert manager.acquire() == (0, "k1")
    
    def test_empty_pool_is_configuration_error(self):
        """Test a pool needs at least one key."""
        with pytest.raises(ConfigurationError):
            KeyRotationManager([])


# ============================================================
# RECOVERY POLICY TESTS
# ============================================================

class TestRecoveryPolicy:
    """Tests for the exhausted-key recovery policy."""
    
    def test_no_recovery_by_default(self):
        """Test exhausted keys stay out without a cooldown."""
        clock = FakeClock()
        manager = KeyRotationManager(["k1"], clock=clock)
        manager.mark_exhausted(0)
        
        clock.now += 10 ** 9
        
        with pytest.raises(ProviderExhaustedError):
            manager.acquire()
    
    def test_cooldown_recovery(self):
        """Test keys return after the configured cooldown."""
        clock = FakeClock()
        manager = KeyRotationManager(
            ["k1", "k2"],
            recovery_policy=KeyRecoveryPolicy(cooldown_seconds=60),
            clock=clock,
        )
        manager.mark_exhausted(0)
        manager.mark_exhausted(1)
        
        clock.now += 30
        with pytest.raises(ProviderExhaustedError):
            manager.acquire()
        
        clock.now += 30
        assert manager.acquire()[1] in ("k1", "k2")
    
    def test_invalid_cooldown(self):
        """Test non-positive cooldown is rejected."""
        with pytest.raises(ValueError):
            KeyRecoveryPolicy(cooldown_seconds=0)


# ============================================================
# CREDENTIAL TESTS
# ============================================================

class TestCredentials:
    """Tests for JWT expiry, masking and env loading."""
    
    def test_jwt_expiry_decoded(self):
        """Test exp claim is read from the payload."""
        assert jwt_expiry(make_jwt(1234567890)) == 1234567890
    
    def test_non_jwt_has_no_expiry(self):
        """Test opaque keys never expire."""
        assert jwt_expiry("plain-api-key") is None
        assert jwt_expiry("eyJnot-base64.@@@") is None
    
    def test_expired_jwt_skipped(self):
        """Test an expired JWT key is never served."""
        clock = FakeClock(now=2_000_000.0)
        expired = make_jwt(exp=1_000_000)
        valid = make_jwt(exp=3_000_000)
        manager = KeyRotationManager([expired, valid], clock=clock)
        
        assert manager.acquire() == (1, valid)
        assert manager.status()["exhausted_keys"] == 1
    
    def test_all_expired_fails_fast(self):
        """Test a pool of expired JWTs reports exhaustion."""
        clock = FakeClock(now=2_000_000.0)
        manager = KeyRotationManager([make_jwt(1), make_jwt(2)], clock=clock)
        
        with pytest.raises(ProviderExhaustedError):
            manager.acquire()
    
    def test_mask_key(self):
        """Test masking keeps 8 leading and 4 trailing characters."""
        assert mask_key("abcdefghijklmnopqrstuvwxyz") == "abcdefgh...wxyz"
        assert mask_key("short") == "***"
    
    def test_status_masks_keys(self):
        """Test status never exposes full keys."""
        manager = KeyRotationManager(["abcdefghijklmnopqrstuvwxyz"])
        
        status = manager.status()
        
        assert status["keys"][0]["masked"] == "abcdefgh...wxyz"
        assert "abcdefghijklmnopqrstuvwxyz" not in str(status)
    
    def test_load_numbered_keys_stops_at_gap(self):
        """Test numbered env vars load until the first gap."""
        env = {
            "MORALIS_API_KEY_1": "a",
            "MORALIS_API_KEY_2": "b",
            "MORALIS_API_KEY_4": "d",
        }
        
        assert load_keys_from_env("MORALIS_API_KEY", env) == ["a", "b"]
    
    def test_load_comma_list_fallback(self):
        """Test comma-separated fallback."""
        env = {"MORALIS_API_KEYS": "a, b ,c"}
        
        assert load_keys_from_env("MORALIS_API_KEY", env) == ["a", "b", "c"]
    
    def test_from_env_without_keys(self):
        """Test from_env with no keys raises ConfigurationError."""
        with pytest.raises(ConfigurationError):
            KeyRotationManager.from_env(env={})
    
    @pytest.mark.parametrize("status,body,expected", [
        (401, None, True),
        (429, None, True),
        (400, '{"code": "C0006", "message": "Your usage has been consumed"}', True),
        (403, '{"code": "C0006", "message": "Upgrade your plan"}', True),
        (400, '{"code": "C0006"}', False),
        (403, "Upgrade your plan", False),
        (400, "Planned maintenance", False),
        (500, "internal", False),
        (503, "See the status page for an explanation", False),
        (502, '{"code": "C0006", "message": "plan"}', False),
        (None, "usage has been consumed", False),
        (404, None, False),
    ])
    def test_is_quota_error(self, status, body, expected):
        """Test quota error classification."""
        assert is_quota_error(status, body) is expected
