"""Unit tests for the reconciliation sweep and its scheduler."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from billflow import crud, schemas
from billflow.billing.reconciliation import (
    ReconciliationScheduler,
    ReconciliationSweep,
    reminder_dedup_key,
)
from billflow.core.datetime_utils import utc_now_naive
from billflow.core.exceptions import ExternalServiceError
from billflow.integrations.notifier import NotificationKind

Status = schemas.SubscriptionStatus


@pytest.fixture
def now():
    """Reference time of the sweep."""
    return utc_now_naive()


@pytest.fixture
def sweep(session_factory, state_store, mock_notifier):
    """Create a sweep processing one tenant at a time."""
    return ReconciliationSweep(
        session_factory=session_factory,
        store=state_store,
        sender=mock_notifier,
        max_concurrency=1,
    )


async def reload(session_factory, tenant_id):
    """Read a tenant and its latest subscription in a fresh session."""
    async with session_factory() as db:
        tenant = await crud.tenant.get(db, tenant_id)
        subscription = await crud.subscription.get_latest_for_tenant(db, tenant_id=tenant_id)
        history = await crud.history_entry.get_recent(db, tenant_id=tenant_id)
        return tenant, subscription, history


class TestTrialReminders:
    """Tests for trial reminders."""

    async def test_reminder_at_offset(self, sweep, subscription_factory, mock_notifier, now):
        """Test that a trial three days from its end gets one reminder."""
        tenant, _ = await subscription_factory(
            Status.TRIAL, trial_end=now + timedelta(days=3, hours=-1)
        )

        result = await sweep.run(now)

        assert result.tenants_scanned == 1
        assert result.reminders_sent == 1
        mock_notifier.send.assert_awaited_once()
        kind, payload = mock_notifier.send.await_args.args
        assert kind == NotificationKind.TRIAL_REMINDER
        assert payload["days_left"] == 3
        assert payload["email"] == "billing@acme.test"

    async def test_reminder_is_recorded_with_its_offset(
        self, sweep, session_factory, subscription_factory, now
    ):
        """Test the ledger entry written for a reminder."""
        tenant, _ = await subscription_factory(
            Status.TRIAL, trial_end=now + timedelta(days=1, hours=-1)
        )

        await sweep.run(now)

        _, _, history = await reload(session_factory, tenant.id)
        reminders = [e for e in history if e.action == schemas.HistoryAction.TRIAL_REMINDER]
        assert len(reminders) == 1
        assert reminders[0].entry_metadata["offset"] == 1
        assert reminders[0].actor == "sweep"
        assert reminders[0].dedup_key == reminder_dedup_key(tenant.id, 1, now)

    async def test_reminder_is_sent_once_per_offset(
        self, sweep, subscription_factory, mock_notifier, now
    ):
        """Test that a second pass on the same day does not remind again."""
        await subscription_factory(Status.TRIAL, trial_end=now + timedelta(days=3, hours=-1))

        await sweep.run(now)
        result = await sweep.run(now + timedelta(minutes=5))

        assert result.reminders_sent == 0
        assert result.skipped == 1
        assert mock_notifier.send.await_count == 1

    async def test_no_reminder_between_offsets(
        self, sweep, subscription_factory, mock_notifier, now
    ):
        """Test that days left outside the reminder offsets send nothing."""
        await subscription_factory(Status.TRIAL, trial_end=now + timedelta(days=5, hours=-1))

        result = await sweep.run(now)

        assert result.tenants_scanned == 1
        assert result.reminders_sent == 0
        assert result.skipped == 0
        mock_notifier.send.assert_not_awaited()

    async def test_reminder_on_last_day(self, sweep, subscription_factory, mock_notifier, now):
        """Test that a trial ending later today counts as one day left."""
        await subscription_factory(Status.TRIAL, trial_end=now + timedelta(hours=2))

        result = await sweep.run(now)

        assert result.reminders_sent == 1
        assert mock_notifier.send.await_args.args[1]["days_left"] == 1

    async def test_skipped_notification_is_not_recorded(
        self, sweep, session_factory, subscription_factory, mock_notifier, now
    ):
        """Test that a reminder the notifier did not send is retried on the next pass."""
        tenant, _ = await subscription_factory(
            Status.TRIAL, trial_end=now + timedelta(days=7, hours=-1)
        )
        mock_notifier.send.return_value = False

        result = await sweep.run(now)

        assert result.reminders_sent == 0
        assert result.skipped == 1
        _, _, history = await reload(session_factory, tenant.id)
        assert all(e.action != schemas.HistoryAction.TRIAL_REMINDER for e in history)

        mock_notifier.send.return_value = True
        result = await sweep.run(now)
        assert result.reminders_sent == 1

    async def test_notifier_failure_is_counted(
        self, sweep, session_factory, subscription_factory, mock_notifier, now
    ):
        """Test that a send error fails the tenant and records nothing."""
        tenant, _ = await subscription_factory(
            Status.TRIAL, trial_end=now + timedelta(days=3, hours=-1)
        )
        mock_notifier.send.side_effect = ExternalServiceError(service_name="Resend")

        result = await sweep.run(now)

        assert result.failed == 1
        assert result.reminders_sent == 0
        _, _, history = await reload(session_factory, tenant.id)
        assert all(e.action != schemas.HistoryAction.TRIAL_REMINDER for e in history)

    async def test_reminder_is_sent_without_the_tenant_lock(
        self, sweep, state_store, subscription_factory, mock_notifier, now
    ):
        """Test that no tenant lock is held while the reminder is in flight."""
        tenant, _ = await subscription_factory(
            Status.TRIAL, trial_end=now + timedelta(days=3, hours=-1)
        )
        held = []

        async def _send(kind, payload):
            held.append(state_store.locks.get(tenant.id).locked())
            return True

        mock_notifier.send.side_effect = _send

        result = await sweep.run(now)

        assert result.reminders_sent == 1
        assert held == [False]


class TestTrialConversion:
    """Tests for converting expired trials."""

    async def test_expired_trial_is_converted(
        self, sweep, session_factory, subscription_factory, mock_notifier, now
    ):
        """Test that a trial past its end becomes active when no webhook arrived."""
        tenant, _ = await subscription_factory(
            Status.TRIAL,
            trial_end=now - timedelta(hours=1),
            current_period_end=now - timedelta(hours=1),
        )

        result = await sweep.run(now)

        assert result.trials_converted == 1
        mock_notifier.send.assert_not_awaited()

        tenant, subscription, history = await reload(session_factory, tenant.id)
        assert subscription.status == "active"
        assert tenant.subscription_status == "active"
        assert tenant.trial_end is None
        converted = [e for e in history if e.action == schemas.HistoryAction.TRIAL_CONVERTED]
        assert converted[0].entry_metadata["converted_automatically"] is True
        assert converted[0].previous_status == "trial"

    async def test_trial_without_provider_subscription_is_left_alone(
        self, sweep, session_factory, subscription_factory, now
    ):
        """Test that a trial that was never checked out is not granted a paid status."""
        tenant, _ = await subscription_factory(
            Status.TRIAL,
            external_subscription_id=None,
            trial_end=now - timedelta(hours=1),
        )

        result = await sweep.run(now)

        assert result.trials_converted == 0
        assert result.skipped == 1
        tenant, _, _ = await reload(session_factory, tenant.id)
        assert tenant.subscription_status == "trial"

    async def test_conversion_runs_once(self, sweep, subscription_factory, now):
        """Test that a converted tenant is no longer in scope."""
        await subscription_factory(Status.TRIAL, trial_end=now - timedelta(hours=1))

        await sweep.run(now)
        result = await sweep.run(now)

        assert result.tenants_scanned == 0
        assert result.trials_converted == 0


class TestPeriodEndFinalization:
    """Tests for finalizing cancellations scheduled at period end."""

    async def test_period_end_cancellation_is_finalized(
        self, sweep, session_factory, subscription_factory, now
    ):
        """Test that an active subscription past its scheduled cancellation ends."""
        period_end = now - timedelta(hours=1)
        tenant, _ = await subscription_factory(
            Status.ACTIVE,
            cancel_at_period_end=True,
            current_period_start=period_end - timedelta(days=30),
            current_period_end=period_end,
        )

        result = await sweep.run(now)

        assert result.cancellations_finalized == 1
        tenant, subscription, history = await reload(session_factory, tenant.id)
        assert subscription.status == "canceled"
        assert subscription.ended_at == period_end
        assert tenant.subscription_status == "canceled"
        assert tenant.access_until == period_end
        assert history[0].action == schemas.HistoryAction.CANCELED
        assert history[0].actor == "sweep"

    async def test_running_period_is_not_finalized(self, sweep, subscription_factory):
        """Test that a scheduled cancellation waits for the period to end."""
        await subscription_factory(Status.ACTIVE, cancel_at_period_end=True)

        result = await sweep.run()

        assert result.tenants_scanned == 0
        assert result.cancellations_finalized == 0

    async def test_canceled_trial_is_finalized_not_converted(
        self, sweep, session_factory, subscription_factory, mock_notifier, now
    ):
        """Test that a trial scheduled to cancel ends instead of becoming active."""
        trial_end = now - timedelta(hours=1)
        tenant, _ = await subscription_factory(
            Status.TRIAL,
            cancel_at_period_end=True,
            trial_end=trial_end,
            current_period_end=trial_end,
        )

        result = await sweep.run(now)

        assert result.cancellations_finalized == 1
        assert result.trials_converted == 0
        tenant, subscription, _ = await reload(session_factory, tenant.id)
        assert subscription.status == "canceled"
        assert tenant.subscription_status == "canceled"
        mock_notifier.send.assert_not_awaited()


class TestIsolation:
    """Tests for per-tenant failure isolation."""

    async def test_one_failing_tenant_does_not_stop_the_pass(
        self, sweep, subscription_factory, tenant_factory, mock_notifier, now
    ):
        """Test that the other tenants are still processed after a failure."""
        trial_end = now + timedelta(days=3, hours=-1)
        broken = await tenant_factory(name="Broken Ltd", email="broken@example.test")
        await subscription_factory(
            Status.TRIAL, tenant=broken, trial_end=trial_end, external_subscription_id="sub_broken"
        )
        await subscription_factory(
            Status.TRIAL, trial_end=trial_end, external_subscription_id="sub_healthy"
        )

        async def _send(kind, payload):
            if payload["email"] == "broken@example.test":
                raise ExternalServiceError(service_name="Resend", message="Mailbox unavailable")
            return True

        mock_notifier.send.side_effect = _send

        result = await sweep.run(now)

        assert result.tenants_scanned == 2
        assert result.failed == 1
        assert result.reminders_sent == 1


class TestReconciliationScheduler:
    """Tests for ReconciliationScheduler."""

    @pytest.fixture
    def mock_sweep(self):
        """Create a sweep mock."""
        sweep = MagicMock(spec=ReconciliationSweep)
        sweep.run = AsyncMock(return_value=schemas.ReconciliationResult())
        return sweep

    async def test_start_and_stop(self, mock_sweep):
        """Test that the scheduler runs passes until stopped."""
        scheduler = ReconciliationScheduler(sweep=mock_sweep, interval=0.01)

        await scheduler.start()
        assert scheduler.running
        assert scheduler.task is not None
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert not scheduler.running
        assert scheduler.task is None
        assert mock_sweep.run.await_count >= 1

    async def test_start_twice(self, mock_sweep):
        """Test that a second start does not spawn another loop."""
        scheduler = ReconciliationScheduler(sweep=mock_sweep, interval=0.01)
        await scheduler.start()
        task = scheduler.task

        await scheduler.start()

        assert scheduler.task is task
        await scheduler.stop()

    async def test_loop_survives_sweep_errors(self, mock_sweep):
        """Test that a failing pass does not end the loop."""
        calls = 0

        async def _run():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("database unavailable")
            return schemas.ReconciliationResult()

        mock_sweep.run.side_effect = _run
        scheduler = ReconciliationScheduler(sweep=mock_sweep, interval=0.01)

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert calls >= 2

    async def test_stop_when_not_running(self, mock_sweep):
        """Test that stopping an idle scheduler is a no-op."""
        scheduler = ReconciliationScheduler(sweep=mock_sweep, interval=0.01)
        await scheduler.stop()
        assert not scheduler.running
        mock_sweep.run.assert_not_awaited()
