# ABOUTME: Unit tests for safety utilities
# ABOUTME: Tests confirmation patterns, rate limiting, operation guards and Secret masking

import pytest

from gitops_reconciler.config import SecuritySettings
from gitops_reconciler.utils.safety import (
    MASK,
    ConfirmationRequired,
    OperationBlocked,
    RateLimiter,
    SafetyGuard,
    mask_secret_values,
)


@pytest.mark.unit
class TestRateLimiter:
    """Tests for RateLimiter class."""

    def test_allows_calls_within_limit(self):
        """Test that calls within limit are allowed."""
        limiter = RateLimiter(max_calls=3, window_seconds=60)

        assert limiter.check("test") is True
        assert limiter.check("test") is True
        assert limiter.check("test") is True

    def test_blocks_calls_exceeding_limit(self):
        """Test that calls exceeding limit are blocked."""
        limiter = RateLimiter(max_calls=2, window_seconds=60)

        assert limiter.check("test") is True
        assert limiter.check("test") is True
        assert limiter.check("test") is False

    def test_independent_keys(self):
        """Test that different keys have independent limits."""
        limiter = RateLimiter(max_calls=1, window_seconds=60)

        assert limiter.check("key1") is True
        assert limiter.check("key2") is True
        assert limiter.check("key1") is False

    def test_reset(self):
        """Test resetting one key and then all keys."""
        limiter = RateLimiter(max_calls=1, window_seconds=60)
        limiter.check("key1")
        limiter.check("key2")

        limiter.reset("key1")
        assert limiter.check("key1") is True
        assert limiter.check("key2") is False

        limiter.reset()
        assert limiter.check("key2") is True


@pytest.mark.unit
class TestSafetyGuard:
    """Tests for SafetyGuard class."""

    def test_read_operation_allowed(self, safety_guard: SafetyGuard):
        """Test that read operations are allowed."""
        assert safety_guard.check_read_operation("list_applications") is None

    def test_read_operation_rate_limited(self):
        """Test that read operations can be rate limited."""
        guard = SafetyGuard(SecuritySettings(rate_limit_calls=1, rate_limit_window=60))

        assert guard.check_read_operation("get_application_status") is None
        blocked = guard.check_read_operation("get_application_status")

        assert isinstance(blocked, OperationBlocked)
        assert blocked.reason == "Rate limit exceeded"

    def test_reads_allowed_in_read_only_mode(self, read_only_safety_guard: SafetyGuard):
        """Test read-only mode never blocks status queries."""
        assert read_only_safety_guard.check_read_operation("get_application_diff") is None

    def test_write_operation_blocked_read_only(self, read_only_safety_guard: SafetyGuard):
        """Test that write operations are blocked in read-only mode."""
        blocked = read_only_safety_guard.check_write_operation("sync_application")

        assert isinstance(blocked, OperationBlocked)
        assert blocked.setting == "GITOPS_MCP_READ_ONLY"

    def test_write_operation_allowed(self, safety_guard: SafetyGuard):
        """Test that write operations are allowed when not read-only."""
        assert safety_guard.check_write_operation("set_auto_sync") is None

    def test_destructive_blocked_read_only(self, read_only_safety_guard: SafetyGuard):
        """Test read-only mode is reported before the destructive setting."""
        blocked = read_only_safety_guard.check_destructive_operation(
            "sync_application", "shop-prod", confirmed=True, confirm_name="shop-prod"
        )

        assert isinstance(blocked, OperationBlocked)
        assert "read-only" in blocked.reason

    def test_destructive_blocked_when_disabled(self):
        """Test pruning can be switched off while plain syncs stay allowed."""
        guard = SafetyGuard(SecuritySettings(read_only=False, disable_destructive=True))

        blocked = guard.check_destructive_operation(
            "sync_application", "shop-prod", confirmed=True, confirm_name="shop-prod"
        )

        assert isinstance(blocked, OperationBlocked)
        assert blocked.setting == "GITOPS_MCP_DISABLE_DESTRUCTIVE"
        assert guard.check_write_operation("sync_application") is None

    def test_destructive_requires_confirmation(self, safety_guard: SafetyGuard):
        """Test that pruning operations require confirmation."""
        result = safety_guard.check_destructive_operation(
            "sync_application", "shop-prod", details={"prune": True}
        )

        assert isinstance(result, ConfirmationRequired)
        assert result.target == "shop-prod"
        assert result.details == {"prune": True}

    def test_destructive_requires_name_match(self, safety_guard: SafetyGuard):
        """Test that confirmation must name the target application."""
        result = safety_guard.check_destructive_operation(
            "sync_application", "shop-prod", confirmed=True, confirm_name="shop-dev"
        )

        assert isinstance(result, ConfirmationRequired)

    def test_destructive_allowed_with_confirmation(self, safety_guard: SafetyGuard):
        """Test that confirmed pruning is allowed."""
        result = safety_guard.check_destructive_operation(
            "sync_application", "shop-prod", confirmed=True, confirm_name="shop-prod"
        )

        assert result is None

    def test_mask_secrets_follows_settings(self):
        assert SafetyGuard(SecuritySettings(mask_secrets=False)).mask_secrets is False
        assert SafetyGuard(SecuritySettings()).mask_secrets is True


@pytest.mark.unit
class TestOperationBlocked:
    """Tests for OperationBlocked response."""

    def test_format_message(self):
        """Test message formatting."""
        blocked = OperationBlocked(
            operation="sync_application",
            reason="Controller is running in read-only mode",
            setting="GITOPS_MCP_READ_ONLY",
        )

        message = blocked.format_message()

        assert "OPERATION BLOCKED: sync_application" in message
        assert "Reason: Controller is running in read-only mode" in message
        assert "Set GITOPS_MCP_READ_ONLY=false" in message


@pytest.mark.unit
class TestConfirmationRequired:
    """Tests for ConfirmationRequired response."""

    def test_format_message_with_details(self):
        """Test message formatting with details."""
        confirmation = ConfirmationRequired(
            operation="promote_application",
            target="shop-prod",
            impact="Owned resources no longer in git will be DELETED from the cluster",
            confirmation_instructions="To proceed, set confirm=true AND confirm_name='shop-prod'",
            details={"revision": "abc1234"},
        )

        message = confirmation.format_message()

        assert message.startswith("CONFIRMATION REQUIRED: promote_application")
        assert "Target: shop-prod" in message
        assert "  revision: abc1234" in message
        assert message.endswith("confirm_name='shop-prod'")


@pytest.mark.unit
class TestMaskSecretValues:
    """Tests for mask_secret_values."""

    def test_secret_values_masked_keys_kept(self):
        """Test data and stringData values are hidden but keys stay visible."""
        secret = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "db"},
            "data": {"password": "aHVudGVyMg=="},
            "stringData": {"user": "admin"},
        }

        masked = mask_secret_values(secret)

        assert masked["data"] == {"password": MASK}
        assert masked["stringData"] == {"user": MASK}
        assert masked["metadata"] == {"name": "db"}
        assert secret["data"]["password"] == "aHVudGVyMg=="

    def test_patch_masked_with_explicit_kind(self):
        """Test patches, which carry no kind, are masked when the kind is given."""
        patch = {"data": {"password": "bmV3"}}

        assert mask_secret_values(patch, kind="Secret") == {"data": {"password": MASK}}

    def test_other_kinds_untouched(self):
        """Test ConfigMaps are shown as they are."""
        cfg = {"kind": "ConfigMap", "data": {"mode": "fast"}}

        assert mask_secret_values(cfg) is cfg
