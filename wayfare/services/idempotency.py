"""Deterministic idempotency keys.

A key is the colon-joined ``(entity, entity id, scope..., operation)`` tuple,
so any client can rebuild the exact same string for a retry without shared
state. Examples::

    checkout:3f1c...:payment           authorize + capture of one session
    checkout:3f1c...:book:0            provider booking of item #0
    booking:9ab2...:7c0d...:refund     refund of one booking item
"""


def make_idempotency_key(*parts) -> str:
    if len(parts) < 3:
        raise ValueError("an idempotency key needs entity, entity id and operation")
    values = [str(p) for p in parts]
    for value in values:
        if not value or ":" in value:
            raise ValueError(f"invalid idempotency key part: {value!r}")
    return ":".join(values)


def payment_key(checkout_session_id: str) -> str:
    return make_idempotency_key("checkout", checkout_session_id, "payment")


def provider_booking_key(checkout_session_id: str, item_index: int) -> str:
    return make_idempotency_key("checkout", checkout_session_id, "book", item_index)


def refund_key(booking_id: str, booking_item_id: str) -> str:
    return make_idempotency_key("booking", booking_id, booking_item_id, "refund")
