"""Subscription status transition table.

Pure decision logic: given a trigger, the current status and (for provider-driven
triggers) the status the provider reports, decide whether and where the
subscription moves. Nothing here touches the database; the state store applies
the decision.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from billflow.core.exceptions import MalformedEventError
from billflow.schemas.subscription import SubscriptionStatus

INCOMPLETE = SubscriptionStatus.INCOMPLETE
TRIAL = SubscriptionStatus.TRIAL
ACTIVE = SubscriptionStatus.ACTIVE
PAST_DUE = SubscriptionStatus.PAST_DUE
CANCELED = SubscriptionStatus.CANCELED

NON_TERMINAL = frozenset({INCOMPLETE, TRIAL, ACTIVE, PAST_DUE})


class Trigger(str, Enum):
    """Something that may move a subscription's status."""

    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CANCEL_IMMEDIATELY = "cancel_immediately"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    TRIAL_EXPIRED = "trial_expired"
    TRIAL_EXTENDED = "trial_extended"
    PERIOD_END_REACHED = "period_end_reached"


class CheckMode(str, Enum):
    """How a rule treats an unmet precondition.

    STRICT: the trigger originates from this system; an unmet precondition is
        rejected and must not double-apply.
    LENIENT: provider event with a precondition; unmet means log, acknowledge, no-op.
    AUTHORITATIVE: provider state overwrites ours from any non-terminal status.
    """

    STRICT = "strict"
    LENIENT = "lenient"
    AUTHORITATIVE = "authoritative"


@dataclass(frozen=True)
class TransitionRule:
    """One row of the transition table.

    ``target`` None means the new status is taken from the proposed (provider) status;
    ``keep`` means the status itself stays where it is.
    """

    allowed_from: frozenset
    mode: CheckMode
    target: Optional[SubscriptionStatus] = None
    keep: bool = False
    allowed_targets: Optional[frozenset] = None


@dataclass
class TransitionDecision:
    """Result of evaluating a trigger against the current status."""

    allowed: bool
    trigger: Trigger
    previous_status: Optional[SubscriptionStatus]
    new_status: Optional[SubscriptionStatus]
    mode: CheckMode
    reason: str = ""

    @property
    def changes_status(self) -> bool:
        """Whether applying the decision changes the stored status."""
        return self.allowed and self.new_status != self.previous_status


TRANSITIONS: dict[Trigger, TransitionRule] = {
    Trigger.CHECKOUT_COMPLETED: TransitionRule(
        allowed_from=frozenset({INCOMPLETE}),
        mode=CheckMode.STRICT,
        allowed_targets=frozenset({TRIAL, ACTIVE}),
    ),
    # "any" prior state, including no subscription at all
    Trigger.SUBSCRIPTION_CREATED: TransitionRule(
        allowed_from=NON_TERMINAL | {None},
        mode=CheckMode.AUTHORITATIVE,
    ),
    Trigger.SUBSCRIPTION_UPDATED: TransitionRule(
        allowed_from=NON_TERMINAL,
        mode=CheckMode.AUTHORITATIVE,
    ),
    Trigger.SUBSCRIPTION_DELETED: TransitionRule(
        allowed_from=NON_TERMINAL,
        mode=CheckMode.AUTHORITATIVE,
        target=CANCELED,
    ),
    Trigger.PAYMENT_SUCCEEDED: TransitionRule(
        allowed_from=frozenset({TRIAL, PAST_DUE, ACTIVE}),
        mode=CheckMode.LENIENT,
        target=ACTIVE,
    ),
    Trigger.PAYMENT_FAILED: TransitionRule(
        allowed_from=frozenset({ACTIVE, TRIAL}),
        mode=CheckMode.LENIENT,
        target=PAST_DUE,
    ),
    Trigger.CANCEL_IMMEDIATELY: TransitionRule(
        allowed_from=NON_TERMINAL,
        mode=CheckMode.STRICT,
        target=CANCELED,
    ),
    Trigger.CANCEL_AT_PERIOD_END: TransitionRule(
        allowed_from=NON_TERMINAL,
        mode=CheckMode.STRICT,
        keep=True,
    ),
    Trigger.TRIAL_EXPIRED: TransitionRule(
        allowed_from=frozenset({TRIAL}),
        mode=CheckMode.STRICT,
        target=ACTIVE,
    ),
    Trigger.TRIAL_EXTENDED: TransitionRule(
        allowed_from=frozenset({TRIAL}),
        mode=CheckMode.STRICT,
        keep=True,
    ),
    Trigger.PERIOD_END_REACHED: TransitionRule(
        allowed_from=NON_TERMINAL,
        mode=CheckMode.STRICT,
        target=CANCELED,
    ),
}

# Triggers carrying the provider's full subscription state; only these advance
# ``last_event_at``, the watermark older subscription events are dropped against.
ORDERED_TRIGGERS = frozenset(
    {
        Trigger.SUBSCRIPTION_CREATED,
        Trigger.SUBSCRIPTION_UPDATED,
        Trigger.SUBSCRIPTION_DELETED,
    }
)

_PROVIDER_STATUS_MAP = {
    "trialing": TRIAL,
    "active": ACTIVE,
    "past_due": PAST_DUE,
    "unpaid": PAST_DUE,
    "canceled": CANCELED,
    "incomplete_expired": CANCELED,
    "incomplete": INCOMPLETE,
    "paused": INCOMPLETE,
}


def map_provider_status(provider_status: str) -> SubscriptionStatus:
    """Translate a Stripe subscription status into ours.

    Raises:
        MalformedEventError: If the provider status is not known.
    """
    try:
        return _PROVIDER_STATUS_MAP[provider_status]
    except KeyError as e:
        raise MalformedEventError(
            f"Unknown provider subscription status: {provider_status}"
        ) from e


def decide(
    trigger: Trigger,
    current: Optional[SubscriptionStatus],
    proposed: Optional[SubscriptionStatus] = None,
) -> TransitionDecision:
    """Evaluate ``trigger`` against the current status.

    Never raises for an unexpected prior state: the decision is simply not allowed and
    carries the reason, leaving it to the caller to reject (strict) or acknowledge.

    Args:
        trigger: What happened.
        current: The subscription's current status, None if there is no subscription.
        proposed: The status the provider reports, for triggers that mirror it.

    Returns:
        TransitionDecision: Whether the transition applies and the resulting status.
    """
    rule = TRANSITIONS[trigger]
    current = SubscriptionStatus(current) if current is not None else None

    def _reject(reason: str) -> TransitionDecision:
        return TransitionDecision(False, trigger, current, current, rule.mode, reason)

    if current not in rule.allowed_from:
        if current == CANCELED:
            return _reject("subscription is canceled, which is terminal")
        state = current.value if current is not None else "none"
        return _reject(f"{trigger.value} is not valid from status {state}")

    if rule.keep:
        new_status = current
    elif rule.target is not None:
        new_status = rule.target
    else:
        if proposed is None:
            return _reject(f"{trigger.value} requires the provider status")
        if rule.allowed_targets is not None and proposed not in rule.allowed_targets:
            return _reject(f"{trigger.value} cannot move to {proposed.value}")
        new_status = proposed

    return TransitionDecision(True, trigger, current, new_status, rule.mode)
