"""Unit tests for the subscription transition table."""

import pytest

from billflow.billing.state_machine import (
    ACTIVE,
    CANCELED,
    INCOMPLETE,
    PAST_DUE,
    TRIAL,
    CheckMode,
    Trigger,
    decide,
    map_provider_status,
)
from billflow.core.exceptions import MalformedEventError


class TestCheckout:
    """Tests for checkout completion."""

    @pytest.mark.parametrize("proposed", [TRIAL, ACTIVE])
    def test_incomplete_moves_to_provider_status(self, proposed):
        """Test that a confirmed checkout takes the status the provider reports."""
        decision = decide(Trigger.CHECKOUT_COMPLETED, INCOMPLETE, proposed)
        assert decision.allowed
        assert decision.new_status == proposed
        assert decision.changes_status

    def test_checkout_cannot_land_in_past_due(self):
        """Test that only trial or active are valid checkout results."""
        decision = decide(Trigger.CHECKOUT_COMPLETED, INCOMPLETE, PAST_DUE)
        assert not decision.allowed
        assert decision.new_status == INCOMPLETE

    def test_checkout_for_active_subscription_is_rejected(self):
        """Test that a second confirmation is not applied twice."""
        decision = decide(Trigger.CHECKOUT_COMPLETED, ACTIVE, TRIAL)
        assert not decision.allowed
        assert decision.mode == CheckMode.STRICT

    def test_checkout_requires_provider_status(self):
        """Test that the target status must be known."""
        decision = decide(Trigger.CHECKOUT_COMPLETED, INCOMPLETE)
        assert not decision.allowed
        assert "requires the provider status" in decision.reason


class TestPayments:
    """Tests for invoice payment triggers."""

    @pytest.mark.parametrize("current", [TRIAL, PAST_DUE, ACTIVE])
    def test_payment_succeeded_activates(self, current):
        """Test that a paid invoice leaves the subscription active."""
        decision = decide(Trigger.PAYMENT_SUCCEEDED, current)
        assert decision.allowed
        assert decision.new_status == ACTIVE

    def test_payment_succeeded_on_active_does_not_change_status(self):
        """Test that a renewal payment is an allowed no-op on status."""
        decision = decide(Trigger.PAYMENT_SUCCEEDED, ACTIVE)
        assert decision.allowed
        assert not decision.changes_status

    def test_payment_succeeded_on_incomplete_is_not_applied(self):
        """Test the lenient rejection of a payment before checkout confirmation."""
        decision = decide(Trigger.PAYMENT_SUCCEEDED, INCOMPLETE)
        assert not decision.allowed
        assert decision.mode == CheckMode.LENIENT

    @pytest.mark.parametrize("current", [ACTIVE, TRIAL])
    def test_payment_failed_moves_to_past_due(self, current):
        """Test that a failed payment makes the subscription past due."""
        decision = decide(Trigger.PAYMENT_FAILED, current)
        assert decision.allowed
        assert decision.new_status == PAST_DUE

    def test_repeated_payment_failure_is_not_applied(self):
        """Test that a retry failing again does not re-enter past_due."""
        decision = decide(Trigger.PAYMENT_FAILED, PAST_DUE)
        assert not decision.allowed


class TestProviderSubscriptionEvents:
    """Tests for provider-authoritative subscription triggers."""

    def test_created_without_local_subscription(self):
        """Test that a subscription created outside checkout is accepted."""
        decision = decide(Trigger.SUBSCRIPTION_CREATED, None, ACTIVE)
        assert decision.allowed
        assert decision.previous_status is None
        assert decision.new_status == ACTIVE

    def test_updated_overwrites_status(self):
        """Test that the provider status wins from any non-terminal status."""
        decision = decide(Trigger.SUBSCRIPTION_UPDATED, PAST_DUE, ACTIVE)
        assert decision.allowed
        assert decision.new_status == ACTIVE
        assert decision.mode == CheckMode.AUTHORITATIVE

    def test_updated_requires_a_subscription(self):
        """Test that an update cannot create state."""
        decision = decide(Trigger.SUBSCRIPTION_UPDATED, None, ACTIVE)
        assert not decision.allowed
        assert "none" in decision.reason

    @pytest.mark.parametrize("current", [INCOMPLETE, TRIAL, ACTIVE, PAST_DUE])
    def test_deleted_cancels(self, current):
        """Test that provider deletion always ends in canceled."""
        decision = decide(Trigger.SUBSCRIPTION_DELETED, current)
        assert decision.allowed
        assert decision.new_status == CANCELED


class TestLocalTriggers:
    """Tests for triggers originating in this service."""

    def test_cancel_at_period_end_keeps_status(self):
        """Test that scheduling a cancellation does not change the status."""
        decision = decide(Trigger.CANCEL_AT_PERIOD_END, TRIAL)
        assert decision.allowed
        assert decision.new_status == TRIAL

    def test_trial_expired_converts(self):
        """Test the sweep's conversion of a finished trial."""
        decision = decide(Trigger.TRIAL_EXPIRED, TRIAL)
        assert decision.allowed
        assert decision.new_status == ACTIVE

    def test_trial_expired_only_from_trial(self):
        """Test that an already converted trial is not converted again."""
        assert not decide(Trigger.TRIAL_EXPIRED, ACTIVE).allowed

    def test_trial_extended_only_from_trial(self):
        """Test that only a running trial can be extended."""
        assert decide(Trigger.TRIAL_EXTENDED, TRIAL).new_status == TRIAL
        assert not decide(Trigger.TRIAL_EXTENDED, PAST_DUE).allowed


class TestTerminalStatus:
    """Tests for the canceled status."""

    @pytest.mark.parametrize("trigger", list(Trigger))
    def test_nothing_leaves_canceled(self, trigger):
        """Test that no trigger moves a canceled subscription."""
        decision = decide(trigger, CANCELED, ACTIVE)
        assert not decision.allowed
        assert decision.new_status == CANCELED
        assert "terminal" in decision.reason

    def test_decide_accepts_raw_status_values(self):
        """Test that stored string statuses are understood."""
        decision = decide(Trigger.PAYMENT_FAILED, "active")
        assert decision.previous_status == ACTIVE
        assert decision.new_status == PAST_DUE


class TestMapProviderStatus:
    """Tests for map_provider_status."""

    @pytest.mark.parametrize(
        "provider_status, expected",
        [
            ("trialing", TRIAL),
            ("active", ACTIVE),
            ("past_due", PAST_DUE),
            ("unpaid", PAST_DUE),
            ("canceled", CANCELED),
            ("incomplete_expired", CANCELED),
            ("incomplete", INCOMPLETE),
        ],
    )
    def test_known_statuses(self, provider_status, expected):
        """Test the provider status mapping."""
        assert map_provider_status(provider_status) == expected

    def test_unknown_status_is_malformed(self):
        """Test that an unknown provider status is rejected."""
        with pytest.raises(MalformedEventError):
            map_provider_status("exploded")
