"""Unit tests for webhook event parsing."""

import json
import uuid
from datetime import datetime

import pytest

from billflow import schemas
from billflow.billing.event_parser import UnknownEventType, parse_event
from billflow.core.exceptions import MalformedEventError
from tests.helpers.stripe_events import (
    checkout_session_object,
    encode,
    event_envelope,
    invoice_object,
    subscription_object,
)


def test_parse_subscription_event():
    """Test that a subscription event is typed and its timestamps converted."""
    tenant_id = uuid.uuid4()
    period_end = datetime(2024, 2, 1)
    envelope = event_envelope(
        "customer.subscription.updated",
        subscription_object(status="past_due", tenant_id=tenant_id, period_end=period_end),
        event_id="evt_sub",
        created=datetime(2024, 1, 15, 8, 30),
    )

    event = parse_event(encode(envelope))

    assert event.id == "evt_sub"
    assert event.type == schemas.ProviderEventType.SUBSCRIPTION_UPDATED
    assert event.created == datetime(2024, 1, 15, 8, 30)
    assert isinstance(event.data, schemas.SubscriptionData)
    assert event.data.status == "past_due"
    assert event.data.tenant_id == tenant_id
    # Read from the subscription item when the top level carries no period
    assert event.data.period_end == period_end
    assert event.data.amount == 2000
    assert event.data.interval == "month"


def test_parse_accepts_decoded_json():
    """Test that an already decoded envelope is accepted."""
    envelope = event_envelope("invoice.payment_failed", invoice_object())
    event = parse_event(envelope)
    assert isinstance(event.data, schemas.InvoiceData)
    assert event.data.amount_due == 2000


def test_expanded_invoice_subscription_is_unwrapped():
    """Test that an expanded subscription on an invoice yields its ID."""
    invoice = invoice_object()
    invoice["subscription"] = {"id": "sub_expanded", "object": "subscription"}
    event = parse_event(event_envelope("invoice.payment_succeeded", invoice))
    assert event.data.subscription == "sub_expanded"


def test_checkout_tenant_falls_back_to_client_reference():
    """Test that the client reference identifies the tenant without metadata."""
    tenant_id = uuid.uuid4()
    session = checkout_session_object(tenant_id=tenant_id)
    session["metadata"] = {}
    event = parse_event(event_envelope("checkout.session.completed", session))
    assert event.data.tenant_id == tenant_id


def test_invalid_tenant_metadata_is_ignored():
    """Test that a tenant ID that is not a UUID resolves to nothing."""
    subscription = subscription_object()
    subscription["metadata"]["tenant_id"] = "not-a-uuid"
    event = parse_event(event_envelope("customer.subscription.created", subscription))
    assert event.data.tenant_id is None


def test_unknown_event_type():
    """Test that well-formed events of other types are reported as unknown."""
    envelope = event_envelope("customer.created", {"id": "cus_123"}, event_id="evt_other")
    with pytest.raises(UnknownEventType) as exc_info:
        parse_event(encode(envelope))
    assert exc_info.value.event_type == "customer.created"
    assert exc_info.value.event_id == "evt_other"


@pytest.mark.parametrize(
    "body",
    [
        b"{not json",
        b"\xff\xfe",
        json.dumps(["a", "list"]).encode(),
        json.dumps({"type": "invoice.upcoming", "data": {"object": {}}}).encode(),
        json.dumps({"id": "evt_1", "data": {"object": {}}}).encode(),
    ],
)
def test_malformed_envelopes(body):
    """Test that bodies without a usable envelope are malformed."""
    with pytest.raises(MalformedEventError):
        parse_event(body)


def test_missing_data_object_keeps_event_id():
    """Test that the event ID is reported for a malformed data object."""
    envelope = event_envelope("invoice.upcoming", {}, event_id="evt_no_data")
    envelope["data"] = {}
    with pytest.raises(MalformedEventError) as exc_info:
        parse_event(envelope)
    assert exc_info.value.event_id == "evt_no_data"


def test_invalid_data_object():
    """Test that a subscription without a status is malformed."""
    subscription = subscription_object()
    del subscription["status"]
    with pytest.raises(MalformedEventError) as exc_info:
        parse_event(event_envelope("customer.subscription.updated", subscription))
    assert "customer.subscription.updated" in exc_info.value.message
