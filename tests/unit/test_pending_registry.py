"""Unit tests for the pending request registry and expiry sweep."""

import time
import pytest
from datetime import timedelta

from enrollment_service.errors import KeyGenerationError, NoMatchingRequestError
from enrollment_service.models import (
    EffectiveRequestOptions,
    KeyHandle,
    KeyUsageName,
    PendingRequest,
    PendingState,
)
from enrollment_service.pending_registry import ExpirySweeper, PendingRequestRegistry

from ..utils.test_helpers import FakeClock


def make_entry(thumbprint: str, clock: FakeClock) -> PendingRequest:
    """Pending entry with a placeholder key; the registry never touches key material."""
    options = EffectiveRequestOptions(
        subject_name=f"CN={thumbprint}",
        key_length=2048,
        key_usages=frozenset({KeyUsageName.DIGITAL_SIGNATURE}),
        exportable=False,
    )
    handle = KeyHandle(object(), False, thumbprint)
    return PendingRequest(thumbprint, handle, b"csr", options, created_at=clock())


class TestRegistration:
    """Test inserting and looking up entries."""

    def test_register_and_get(self, registry, clock):
        entry = make_entry("aa", clock)

        registry.register(entry)

        assert registry.get("aa") is entry
        assert "aa" in registry
        assert len(registry) == 1

    def test_duplicate_thumbprint_rejected(self, registry, clock):
        registry.register(make_entry("aa", clock))

        with pytest.raises(KeyGenerationError):
            registry.register(make_entry("aa", clock))

    def test_expires_at(self, registry, clock):
        entry = make_entry("aa", clock)

        assert registry.expires_at(entry) == clock() + timedelta(hours=24)

    def test_get_hides_expired_entry(self, registry, clock):
        registry.register(make_entry("aa", clock))
        clock.advance(hours=25)

        assert registry.get("aa") is None

    def test_register_after_close(self, registry, clock):
        registry.close()

        with pytest.raises(RuntimeError):
            registry.register(make_entry("aa", clock))


class TestClaim:
    """Test the claim/complete/release protocol used by installs."""

    def test_claim_and_complete(self, registry, clock):
        entry = make_entry("aa", clock)
        registry.register(entry)

        assert registry.claim("aa") is entry
        completed = registry.complete("aa")

        assert completed.state is PendingState.INSTALLED
        assert completed.key_handle is not None
        assert "aa" not in registry

    def test_claim_unknown(self, registry):
        with pytest.raises(NoMatchingRequestError):
            registry.claim("missing")

    def test_double_claim_rejected(self, registry, clock):
        """Test only one install can own an entry."""
        registry.register(make_entry("aa", clock))
        registry.claim("aa")

        with pytest.raises(NoMatchingRequestError):
            registry.claim("aa")

    def test_release_makes_entry_claimable_again(self, registry, clock):
        entry = make_entry("aa", clock)
        registry.register(entry)
        registry.claim("aa")

        registry.release("aa")

        assert registry.claim("aa") is entry

    def test_claim_of_expired_entry_evicts_it(self, registry, clock):
        entry = make_entry("aa", clock)
        registry.register(entry)
        clock.advance(hours=24)

        with pytest.raises(NoMatchingRequestError):
            registry.claim("aa")

        assert entry.state is PendingState.EXPIRED
        assert entry.key_handle is None
        assert len(registry) == 0

    def test_complete_requires_claim(self, registry, clock):
        registry.register(make_entry("aa", clock))

        with pytest.raises(NoMatchingRequestError):
            registry.complete("aa")


class TestSweep:
    """Test time-to-live eviction."""

    def test_sweep_evicts_only_stale_entries(self, registry, clock):
        old = make_entry("old", clock)
        registry.register(old)
        clock.advance(hours=12)
        fresh = make_entry("fresh", clock)
        registry.register(fresh)
        clock.advance(hours=12, seconds=1)

        evicted = registry.sweep()

        assert evicted == [old]
        assert old.state is PendingState.EXPIRED
        assert old.key_handle is None
        assert registry.thumbprints() == ["fresh"]

    def test_sweep_skips_claimed_entries(self, registry, clock):
        """Test an entry being installed is never evicted underneath the install."""
        entry = make_entry("aa", clock)
        registry.register(entry)
        registry.claim("aa")
        clock.advance(days=2)

        assert registry.sweep() == []

        registry.complete("aa")
        assert entry.state is PendingState.INSTALLED

    def test_sweep_with_explicit_time(self, registry, clock):
        registry.register(make_entry("aa", clock))

        assert registry.sweep(clock() + timedelta(hours=1)) == []
        assert len(registry.sweep(clock() + timedelta(hours=24))) == 1

    def test_custom_ttl(self, clock):
        registry = PendingRequestRegistry(ttl=timedelta(minutes=5), clock=clock)
        registry.register(make_entry("aa", clock))
        clock.advance(minutes=5)

        assert len(registry.sweep()) == 1


class TestCancelAndClose:

    def test_cancel(self, registry, clock):
        entry = make_entry("aa", clock)
        registry.register(entry)

        assert registry.cancel("aa") is True
        assert entry.state is PendingState.ABANDONED
        assert registry.cancel("aa") is False

    def test_cancel_claimed_entry_refused(self, registry, clock):
        registry.register(make_entry("aa", clock))
        registry.claim("aa")

        assert registry.cancel("aa") is False

    def test_close_abandons_everything(self, clock):
        entries = [make_entry(name, clock) for name in ("aa", "bb")]
        with PendingRequestRegistry(clock=clock) as registry:
            for entry in entries:
                registry.register(entry)

        assert all(entry.state is PendingState.ABANDONED for entry in entries)
        assert len(registry) == 0

    def test_close_leaves_claimed_entry_to_complete(self, registry, clock):
        """Test an install in progress at shutdown still finishes as installed."""
        claimed = make_entry("aa", clock)
        idle = make_entry("bb", clock)
        registry.register(claimed)
        registry.register(idle)
        registry.claim("aa")

        registry.close()

        assert idle.state is PendingState.ABANDONED
        assert claimed.state is PendingState.CREATED
        assert registry.complete("aa") is claimed
        assert claimed.state is PendingState.INSTALLED
        assert claimed.key_handle is not None
        assert len(registry) == 0

    def test_release_after_close_abandons(self, registry, clock):
        entry = make_entry("aa", clock)
        registry.register(entry)
        registry.claim("aa")
        registry.close()

        registry.release("aa")

        assert entry.state is PendingState.ABANDONED
        assert entry.key_handle is None
        assert len(registry) == 0


class TestExpirySweeper:
    """Test the background sweep thread."""

    def test_sweeper_evicts_in_background(self, registry, clock):
        entry = make_entry("aa", clock)
        registry.register(entry)
        clock.advance(days=1)

        sweeper = ExpirySweeper(registry, interval_seconds=0.01)
        sweeper.start()
        try:
            deadline = time.monotonic() + 5
            while "aa" in registry and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            sweeper.stop()

        assert entry.state is PendingState.EXPIRED
        assert sweeper.running is False

    def test_sweeper_survives_sweep_errors(self, clock):
        calls = []

        class FlakyRegistry:
            def sweep(self):
                calls.append(1)
                if len(calls) == 1:
                    raise RuntimeError("transient")
                return []

        sweeper = ExpirySweeper(FlakyRegistry(), interval_seconds=0.01)
        sweeper.start()
        try:
            deadline = time.monotonic() + 5
            while len(calls) < 3 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            sweeper.stop()

        assert len(calls) >= 3

    def test_start_is_idempotent(self, registry):
        sweeper = ExpirySweeper(registry, interval_seconds=60)
        sweeper.start()
        thread = sweeper._thread
        sweeper.start()

        assert sweeper._thread is thread
        sweeper.stop()
