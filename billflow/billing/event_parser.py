"""Turn a verified webhook body into a typed provider event."""

import json
from typing import Any, Optional, Union

from pydantic import ValidationError

from billflow import schemas
from billflow.core.exceptions import MalformedEventError, unpack_validation_error
from billflow.schemas.events import EVENT_DATA_MODELS


class UnknownEventType(Exception):
    """Raised for well-formed events of a type no handler exists for."""

    def __init__(self, event_id: str, event_type: str):
        """Create a new UnknownEventType instance."""
        self.event_id = event_id
        self.event_type = event_type
        super().__init__(f"Unhandled event type: {event_type}")


def _envelope(raw: Union[bytes, str, dict[str, Any]]) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        envelope = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEventError(f"Event body is not valid JSON: {e}") from e
    if not isinstance(envelope, dict):
        raise MalformedEventError("Event body is not a JSON object")
    return envelope


def parse_event(raw: Union[bytes, str, dict[str, Any]]) -> schemas.ProviderEvent:
    """Validate an event envelope ``{id, type, created, data: {object}}``.

    Args:
        raw: The raw (already signature-verified) body, or its decoded JSON.

    Returns:
        schemas.ProviderEvent: The event with ``data`` typed per event kind.

    Raises:
        MalformedEventError: If the envelope or its data object is invalid.
        UnknownEventType: If the envelope is valid but the type has no handler.
    """
    envelope = _envelope(raw)

    event_id: Optional[str] = envelope.get("id")
    event_type = envelope.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedEventError("Event has no id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("Event has no type", event_id=event_id)

    try:
        kind = schemas.ProviderEventType(event_type)
    except ValueError:
        raise UnknownEventType(event_id, event_type) from None

    data = envelope.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise MalformedEventError("Event has no data object", event_id=event_id)

    try:
        typed_data = EVENT_DATA_MODELS[kind].model_validate(obj)
        return schemas.ProviderEvent(
            id=event_id,
            type=kind,
            created=envelope.get("created"),
            data=typed_data,
            livemode=bool(envelope.get("livemode", False)),
        )
    except ValidationError as e:
        raise MalformedEventError(
            f"Invalid {event_type} payload: {unpack_validation_error(e)}", event_id=event_id
        ) from e
