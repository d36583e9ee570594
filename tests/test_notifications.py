import json
import threading
import time

import httpx

from services.notifications import NotificationEmitter, PaymentConfirmed, WebhookSink

EVENT = PaymentConfirmed(order_id=1, order_number="ORD-1", user_id=7, reference="VNP1")


def test_webhook_does_not_block_the_caller():
    release = threading.Event()
    received = []

    def handler(request: httpx.Request):
        release.wait(5)
        received.append(json.loads(request.content))
        return httpx.Response(204)

    sink = WebhookSink("https://hooks.test/orders", client=httpx.Client(transport=httpx.MockTransport(handler)))

    started = time.monotonic()
    NotificationEmitter([sink]).emit(EVENT)
    assert time.monotonic() - started < 1
    assert received == []

    release.set()
    sink.flush(timeout=5)
    assert received == [{
        "order_id": 1, "order_number": "ORD-1", "user_id": 7, "reference": "VNP1", "event": "PaymentConfirmed",
    }]


def test_failed_delivery_is_logged(caplog):
    sink = WebhookSink(
        "https://hooks.test/orders",
        client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
    )
    future = sink(EVENT)
    sink.flush(timeout=5)

    assert isinstance(future.exception(), httpx.HTTPStatusError)
    assert "Webhook delivery to https://hooks.test/orders failed" in caplog.text


def test_broken_sink_does_not_stop_the_others():
    seen = []

    def broken(event):
        raise RuntimeError("down")

    NotificationEmitter([broken, seen.append]).emit(EVENT)
    assert seen == [EVENT]
