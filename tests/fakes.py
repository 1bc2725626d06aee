"""In-memory stand-ins for the gateway, the catalog and provider APIs."""
from wayfare.services.payment_gateway import Authorization
from wayfare.services.providers import PROVIDER_CONFIRMED, ProviderBooking, ProviderUnavailable


class FakeGateway:
    def __init__(self):
        self.calls = []
        self.errors = {}  # operation -> exceptions raised on the next calls, in order
        self._intents = 0

    def fail_next(self, operation, *errors):
        self.errors.setdefault(operation, []).extend(errors)

    def _record(self, operation, *args):
        self.calls.append((operation, *args))
        queue = self.errors.get(operation)
        if queue:
            raise queue.pop(0)

    def ops(self, operation):
        return [c for c in self.calls if c[0] == operation]

    def authorize(self, amount_cents, currency, idempotency_key, payment_token=None):
        self._record("authorize", amount_cents, currency, idempotency_key)
        self._intents += 1
        return Authorization(intent_id=f"pi_{self._intents}", status="AUTHORIZED")

    def capture(self, intent_id, amount_cents, currency, idempotency_key):
        self._record("capture", intent_id, amount_cents, idempotency_key)

    def void(self, intent_id, amount_cents, currency):
        self._record("void", intent_id, amount_cents)

    def refund(self, intent_id, amount_cents, currency, idempotency_key):
        self._record("refund", intent_id, amount_cents, idempotency_key)
        return f"re_{len(self.ops('refund'))}"


class FakeCatalog:
    def __init__(self, prices=None):
        self.prices = dict(prices or {})
        self.outages = 0
        self.calls = []

    def get_current_price(self, offer_id):
        self.calls.append(offer_id)
        if self.outages:
            self.outages -= 1
            raise ProviderUnavailable("catalog unavailable")
        return self.prices.get(offer_id)


class FakeProvider:
    def __init__(self, name):
        self.name = name
        self.book_calls = []
        self.cancel_calls = []
        self.book_errors = []
        self.cancel_errors = []
        self.lookup_errors = []
        self.errors_for_key = {}  # idempotency key -> exception raised on every book
        self.bookings = {}  # idempotency key -> ProviderBooking
        self.remote = {}  # confirmation ref -> ProviderBooking

    def book(self, item, idempotency_key):
        self.book_calls.append((item, idempotency_key))
        if idempotency_key in self.errors_for_key:
            raise self.errors_for_key[idempotency_key]
        if self.book_errors:
            raise self.book_errors.pop(0)
        if idempotency_key in self.bookings:
            return self.bookings[idempotency_key].confirmation_ref
        ref = f"{self.name.upper()}-{len(self.bookings) + 1}"
        self.bookings[idempotency_key] = ProviderBooking(PROVIDER_CONFIRMED, ref)
        return ref

    def cancel(self, confirmation_ref):
        self.cancel_calls.append(confirmation_ref)
        if self.cancel_errors:
            raise self.cancel_errors.pop(0)

    def get_status(self, confirmation_ref):
        return self.remote.get(confirmation_ref, ProviderBooking(PROVIDER_CONFIRMED, confirmation_ref))

    def lookup(self, idempotency_key):
        if self.lookup_errors:
            raise self.lookup_errors.pop(0)
        return self.bookings.get(idempotency_key)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send(self, user_id, template_id, data):
        self.sent.append((user_id, template_id, data))

    def templates(self):
        return [t for _, t, _ in self.sent]
