import pytest

from wayfare.services.idempotency import make_idempotency_key, payment_key, provider_booking_key, refund_key


def test_keys_are_deterministic():
    assert payment_key("s1") == "checkout:s1:payment"
    assert payment_key("s1") == payment_key("s1")
    assert provider_booking_key("s1", 2) == "checkout:s1:book:2"
    assert refund_key("b1", "i1") == "booking:b1:i1:refund"


def test_keys_differ_per_item():
    assert provider_booking_key("s1", 0) != provider_booking_key("s1", 1)


@pytest.mark.parametrize("parts", [("checkout", "s1"), ("checkout", "", "payment"), ("checkout", "a:b", "payment")])
def test_malformed_parts_are_rejected(parts):
    with pytest.raises(ValueError):
        make_idempotency_key(*parts)
