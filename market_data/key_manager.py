"""
Key Rotation Manager - Credential pool for a quota-bound provider.

States:
    ACTIVE(i)       serving key i
    EXHAUSTED(all)  every key exhausted, acquire() fails fast

A quota failure on key i marks it exhausted and advances the cursor to the
next non-exhausted key (modulo pool size). The advance is compare-and-set:
it only happens while the cursor still points at i, so two concurrent
failures against the same key cannot skip a still-valid key.

Keys that look like JWTs are checked for `exp` before they are served.
"""

import base64
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from market_data.exceptions import ConfigurationError, ProviderExhaustedError


logger = logging.getLogger(__name__)


QUOTA_ERROR_CODES = ("C0006",)
QUOTA_ERROR_MARKERS = ("usage has been consumed", "plan", "unauthorized")


@dataclass(frozen=True)
class KeyRecoveryPolicy:
    """
    When exhausted keys return to rotation.
    
    cooldown_seconds=None means never (explicit reset() only), matching
    daily quotas that roll over with a process restart. A number returns a
    key to rotation once that many seconds passed since it was exhausted.
    """
    cooldown_seconds: Optional[float] = None
    
    def __post_init__(self) -> None:
        if self.cooldown_seconds is not None and self.cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be positive")
    
    @property
    def automatic(self) -> bool:
        return self.cooldown_seconds is not None


def mask_key(key: str) -> str:
    """First 8 and last 4 characters of a credential."""
    if len(key) <= 12:
        return "***"
    return f"{key[:8]}...{key[-4:]}"


def jwt_expiry(key: str) -> Optional[float]:
    """
    `exp` claim (epoch seconds) of a JWT-style key, or None.
    
    The signature is not verified; only the payload is decoded.
    """
    if not key.startswith("eyJ") or "." not in key:
        return None
    parts = key.split(".")
    if len(parts) < 2:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except ValueError:
        return None
    if not isinstance(claims, dict):
        return None
    exp = claims.get("exp")
    return float(exp) if isinstance(exp, (int, float)) else None


def is_quota_error(status_code: Optional[int], body: Optional[str] = None) -> bool:
    """
    Whether an upstream failure means the current key's quota is used up.
    
    Server errors never count. Otherwise 401 and 429 always count, and the
    message markers are only read from a C0006 error body.
    """
    if status_code is None or status_code >= 500:
        return False
    if status_code in (401, 429):
        return True
    text = (body or "").lower()
    if not any(code.lower() in text for code in QUOTA_ERROR_CODES):
        return False
    return any(marker in text for marker in QUOTA_ERROR_MARKERS)


def load_keys_from_env(
    prefix: str,
    env: Optional[Mapping[str, str]] = None,
) -> list[str]:
    """
    Read `{prefix}_1`, `{prefix}_2`, ... until the first gap.
    
    Falls back to a comma list in `{prefix}S` and then a single `{prefix}`.
    """
    env = os.environ if env is None else env
    keys: list[str] = []
    index = 1
    while True:
        value = env.get(f"{prefix}_{index}")
        if not value:
            break
        keys.append(value.strip())
        index += 1
    if not keys and env.get(f"{prefix}S"):
        keys = [k.strip() for k in env[f"{prefix}S"].split(",") if k.strip()]
    if not keys and env.get(prefix):
        keys = [env[prefix].strip()]
    return keys


class KeyRotationManager:
    """
    Thread-safe rotating key pool.
    
    Example:
        manager = KeyRotationManager(["k1", "k2", "k3"])
        index, key = manager.acquire()
        ...
        if quota_exceeded:
            manager.mark_exhausted(index)
    """
    
    def __init__(
        self,
        keys: list[str],
        provider_name: str = "moralis",
        recovery_policy: Optional[KeyRecoveryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not keys:
            raise ConfigurationError(
                f"No API keys configured for {provider_name}",
                config_key=f"{provider_name.upper()}_API_KEY_1",
                source_name=provider_name,
            )
        self._keys = list(keys)
        self._provider_name = provider_name
        self._policy = recovery_policy or KeyRecoveryPolicy()
        self._clock = clock
        self._lock = threading.Lock()
        self._current_index = 0
        # key index -> time it was exhausted
        self._exhausted: dict[int, float] = {}
        self._rotation_count = 0
        
        logger.info(
            f"[{self._provider_name}] Key pool initialized with {len(self._keys)} key(s)"
        )
    
    @classmethod
    def from_env(
        cls,
        prefix: str = "MORALIS_API_KEY",
        provider_name: str = "moralis",
        recovery_policy: Optional[KeyRecoveryPolicy] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "KeyRotationManager":
        """Build a pool from numbered environment variables."""
        return cls(
            load_keys_from_env(prefix, env),
            provider_name=provider_name,
            recovery_policy=recovery_policy,
        )
    
    # ─────────────────────────────────────────────────────────────
    # Selection
    # ─────────────────────────────────────────────────────────────
    
    @property
    def pool_size(self) -> int:
        return len(self._keys)
    
    @property
    def current_index(self) -> int:
        return self._current_index
    
    def acquire(self) -> tuple[int, str]:
        """
        Current usable key as (index, key).
        
        Raises:
            ProviderExhaustedError: every key is exhausted or expired
        """
        with self._lock:
            self._recover_locked()
            while True:
                index = self._find_available_locked(self._current_index)
                if index is None:
                    raise ProviderExhaustedError(
                        f"All {len(self._keys)} API keys exhausted for {self._provider_name}",
                        source_name=self._provider_name,
                        pool_size=len(self._keys),
                    )
                if self._is_expired(self._keys[index]):
                    logger.warning(
                        f"[{self._provider_name}] Key {index + 1} "
                        f"({mask_key(self._keys[index])}) has expired"
                    )
                    self._exhausted[index] = self._clock()
                    continue
                self._current_index = index
                return index, self._keys[index]
    
    def mark_exhausted(self, index: int) -> bool:
        """
        Record a quota failure for key `index`.
        
        Advances the cursor only if it still points at `index`.
        
        Returns:
            True if a usable key remains in the pool
        """
        with self._lock:
            if index not in self._exhausted:
                self._exhausted[index] = self._clock()
                logger.warning(
                    f"[{self._provider_name}] Key {index + 1} "
                    f"({mask_key(self._keys[index])}) marked exhausted "
                    f"({len(self._exhausted)}/{len(self._keys)})"
                )
            
            if self._current_index == index:
                next_index = self._find_available_locked(index)
                if next_index is None:
                    logger.error(
                        f"[{self._provider_name}] PROVIDER_EXHAUSTED: "
                        f"all {len(self._keys)} keys consumed"
                    )
                    return False
                self._current_index = next_index
                self._rotation_count += 1
                logger.info(
                    f"[{self._provider_name}] Rotated to key {next_index + 1}/{len(self._keys)}"
                )
                return True
            
            return self._find_available_locked(self._current_index) is not None
    
    def reset(self) -> None:
        """Clear the exhausted set and return to the first key."""
        with self._lock:
            self._exhausted.clear()
            self._current_index = 0
        logger.info(f"[{self._provider_name}] Key pool reset")
    
    def status(self) -> dict[str, Any]:
        """Pool status with masked keys."""
        with self._lock:
            self._recover_locked()
            return {
                "provider": self._provider_name,
                "total_keys": len(self._keys),
                "available_keys": len(self._keys) - len(self._exhausted),
                "exhausted_keys": len(self._exhausted),
                "current_index": self._current_index,
                "rotation_count": self._rotation_count,
                "automatic_recovery": self._policy.automatic,
                "keys": [
                    {
                        "index": i,
                        "masked": mask_key(key),
                        "exhausted": i in self._exhausted,
                        "expires_at": jwt_expiry(key),
                    }
                    for i, key in enumerate(self._keys)
                ],
            }
    
    # ─────────────────────────────────────────────────────────────
    # Internals (caller holds self._lock)
    # ─────────────────────────────────────────────────────────────
    
    def _find_available_locked(self, start: int) -> Optional[int]:
        size = len(self._keys)
        for offset in range(size):
            candidate = (start + offset) % size
            if candidate not in self._exhausted:
                return candidate
        return None
    
    def _recover_locked(self) -> None:
        if not self._policy.automatic or not self._exhausted:
            return
        now = self._clock()
        recovered = [
            i for i, exhausted_at in self._exhausted.items()
            if now - exhausted_at >= self._policy.cooldown_seconds
        ]
        for i in recovered:
            del self._exhausted[i]
            logger.info(f"[{self._provider_name}] Key {i + 1} recovered after cooldown")
    
    def _is_expired(self, key: str) -> bool:
        exp = jwt_expiry(key)
        return exp is not None and self._clock() >= exp
