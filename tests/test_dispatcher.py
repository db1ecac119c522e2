import json
import threading

import pytest

from open_payments.core.concurrency import CancellationToken
from open_payments.core.dispatcher import Operation, RequestDispatcher
from open_payments.core.errors import (
    AuthorizationRejected,
    OperationCancelled,
    OperationFailed,
    RequestRejected,
    ServerUnavailable,
    TransportFailure,
)
from open_payments.core.signatures import verify_request

from support import (
    AS_URL,
    MANAGE_URL,
    RS_URL,
    error_response,
    header,
    json_response,
    rotation_response,
    token_response,
)

PAYMENTS_URL = f"{RS_URL}/incoming-payments"
PAYMENT_URL = f"{RS_URL}/incoming-payments/1"


@pytest.fixture
def dispatcher(signer, token_manager, transport, fake_sleep):
    return RequestDispatcher(
        signer,
        token_manager,
        transport,
        max_retries=3,
        backoff_base=0.5,
        backoff_max=8.0,
        sleep=fake_sleep,
    )


class IdempotentResourceServer:
    """Creates a payment once per idempotency key and replays the stored result."""

    def __init__(self, fail_first_response=False):
        self.fail_first_response = fail_first_response
        self.effects = []
        self._results = {}
        self._lock = threading.Lock()

    def __call__(self, request):
        key = header(request, "Idempotency-Key")
        with self._lock:
            if key in self._results:
                return self._results[key]
            payment = {"id": f"{PAYMENTS_URL}/{len(self.effects) + 1}"}
            self.effects.append(json.loads(request.body))
            self._results[key] = json_response(201, payment)
            if self.fail_first_response and len(self.effects) == 1:
                raise TransportFailure("read timed out")
            return self._results[key]


def test_signed_authorized_request(dispatcher, transport, incoming_scope, key_store):
    transport.add("POST", AS_URL, token_response("tok-1"))
    transport.add("GET", PAYMENT_URL, json_response(200, {"id": PAYMENT_URL}))

    result = dispatcher.execute_json(Operation("GET", PAYMENT_URL, scope=incoming_scope))

    assert result == {"id": PAYMENT_URL}
    (request,) = transport.sent("GET", PAYMENT_URL)
    assert header(request, "Authorization") == "GNAP tok-1"
    assert header(request, "Accept") == "application/json"
    assert verify_request(key_store.public_key(), "GET", PAYMENT_URL, request.headers)


def test_operation_without_scope_sends_no_token(dispatcher, transport):
    transport.add("GET", PAYMENT_URL, json_response(200, {}))
    dispatcher.execute(Operation("GET", PAYMENT_URL))
    (request,) = transport.requests
    assert header(request, "Authorization") is None
    assert header(request, "Signature") is not None


def test_rejected_token_is_rotated_and_retried(dispatcher, transport, incoming_scope, key_store):
    transport.add("POST", AS_URL, token_response("tok-1"))
    transport.add("POST", MANAGE_URL, rotation_response("tok-2"))
    transport.add(
        "GET", PAYMENT_URL, error_response(401, "invalid_token"), json_response(200, {"ok": True})
    )

    assert dispatcher.execute_json(Operation("GET", PAYMENT_URL, scope=incoming_scope)) == {
        "ok": True
    }

    sent = transport.sent("GET", PAYMENT_URL)
    assert [header(r, "Authorization") for r in sent] == ["GNAP tok-1", "GNAP tok-2"]
    assert sent[0].headers["Signature"] != sent[1].headers["Signature"]
    for request in sent:
        assert verify_request(key_store.public_key(), "GET", PAYMENT_URL, request.headers)
    assert len(transport.sent("POST", MANAGE_URL)) == 1


def test_second_rejection_is_surfaced(dispatcher, transport, incoming_scope):
    transport.add("POST", AS_URL, token_response("tok-1"))
    transport.add("POST", MANAGE_URL, rotation_response("tok-2"))
    transport.add("GET", PAYMENT_URL, error_response(403, "insufficient_grant"))

    with pytest.raises(AuthorizationRejected) as excinfo:
        dispatcher.execute(Operation("GET", PAYMENT_URL, scope=incoming_scope))

    assert excinfo.value.status == 403
    assert excinfo.value.attempts == 2
    assert excinfo.value.scope_key == incoming_scope.key
    assert len(transport.sent("GET", PAYMENT_URL)) == 2


def test_idempotent_payment_is_retried_without_duplicate_effect(
    dispatcher, transport, incoming_scope, fake_sleep
):
    server = IdempotentResourceServer(fail_first_response=True)
    transport.add("POST", AS_URL, token_response("tok-1"))
    transport.add("POST", PAYMENTS_URL, server)

    operation = Operation(
        "POST",
        PAYMENTS_URL,
        scope=incoming_scope,
        payload={"walletAddress": "https://wallet.example/alice"},
        idempotency_key="pay-1",
    )
    result = dispatcher.execute_json(operation)

    assert result == {"id": f"{PAYMENTS_URL}/1"}
    assert len(server.effects) == 1
    sent = transport.sent("POST", PAYMENTS_URL)
    assert len(sent) == 2
    assert sent[0].body == sent[1].body
    assert all(header(r, "Idempotency-Key") == "pay-1" for r in sent)
    assert '"idempotency-key"' in header(sent[0], "Signature-Input")
    assert fake_sleep.calls == [0.5]


def test_post_without_idempotency_key_is_not_retried(dispatcher, transport, incoming_scope):
    transport.add("POST", AS_URL, token_response("tok-1"))
    transport.add("POST", PAYMENTS_URL, TransportFailure("read timed out"))

    with pytest.raises(OperationFailed) as excinfo:
        dispatcher.execute(
            Operation("POST", PAYMENTS_URL, scope=incoming_scope, payload={"walletAddress": "w"})
        )

    assert excinfo.value.attempts == 1
    assert isinstance(excinfo.value.last_error, TransportFailure)
    assert len(transport.sent("POST", PAYMENTS_URL)) == 1


def test_server_errors_back_off_then_fail(dispatcher, transport, incoming_scope, fake_sleep):
    transport.add("POST", AS_URL, token_response("tok-1"))
    transport.add("GET", PAYMENT_URL, error_response(503, "unavailable", "maintenance"))

    with pytest.raises(OperationFailed) as excinfo:
        dispatcher.execute(Operation("GET", PAYMENT_URL, scope=incoming_scope))

    error = excinfo.value
    assert error.attempts == 4
    assert error.status == 503
    assert isinstance(error.last_error, ServerUnavailable)
    assert error.__cause__ is error.last_error
    assert error.scope_key == incoming_scope.key
    assert fake_sleep.calls == [0.5, 1.0, 2.0]
    assert len(transport.sent("GET", PAYMENT_URL)) == 4


def test_transient_failure_then_success(dispatcher, transport, incoming_scope):
    transport.add("POST", AS_URL, token_response("tok-1"))
    transport.add(
        "GET",
        PAYMENT_URL,
        TransportFailure("connection reset"),
        json_response(502),
        json_response(200, {"id": PAYMENT_URL}),
    )
    assert dispatcher.execute_json(Operation("GET", PAYMENT_URL, scope=incoming_scope)) == {
        "id": PAYMENT_URL
    }
    assert len(transport.sent("POST", AS_URL)) == 1


def test_client_errors_are_not_retried(dispatcher, transport, incoming_scope, fake_sleep):
    transport.add("POST", AS_URL, token_response("tok-1"))
    transport.add("GET", PAYMENT_URL, error_response(404, "not_found", "unknown payment"))

    with pytest.raises(RequestRejected) as excinfo:
        dispatcher.execute(Operation("GET", PAYMENT_URL, scope=incoming_scope))

    assert excinfo.value.status == 404
    assert excinfo.value.code == "not_found"
    assert fake_sleep.calls == []


def test_backoff_is_capped(signer, token_manager, transport):
    dispatcher = RequestDispatcher(
        signer, token_manager, transport, backoff_base=1.0, backoff_max=3.0
    )
    assert [dispatcher.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]


def test_cancelled_operation_sends_nothing(dispatcher, transport, incoming_scope):
    cancel = CancellationToken()
    cancel.cancel()
    with pytest.raises(OperationCancelled):
        dispatcher.execute(Operation("GET", PAYMENT_URL, scope=incoming_scope), cancel=cancel)
    assert transport.requests == []


def test_explicit_zero_timeout_is_kept(dispatcher, transport):
    transport.add("GET", PAYMENT_URL, json_response(200, {"id": PAYMENT_URL}))

    dispatcher.execute(Operation("GET", PAYMENT_URL, timeout=0))
    dispatcher.execute(Operation("GET", PAYMENT_URL))

    assert transport.timeouts == [0, 10.0]
