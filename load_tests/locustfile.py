"""
Locust load tests for the Stripe webhook endpoint.

Run against a local server sharing the same signing secret:
    STRIPE_WEBHOOK_SECRET=whsec_load uv run uvicorn practice_webhooks.app:create_app --factory --port 8000

Headless benchmark (60 s, 50 users, ramp 10/s):
    STRIPE_WEBHOOK_SECRET=whsec_load uv run locust -f load_tests/locustfile.py --headless \
        -u 50 -r 10 --run-time 60s --host http://localhost:8000
"""

import hashlib
import hmac
import json
import os
import time
import uuid

from locust import HttpUser, between, task

SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "whsec_load")


def _event(event_id: str, event_type: str = "payment_intent.succeeded") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {
                "object": {
                    "id": f"pi_{uuid.uuid4().hex[:16]}",
                    "object": "payment_intent",
                    "amount": 4900,
                    "currency": "usd",
                    "status": "succeeded",
                }
            },
        }
    ).encode()


def _signature(body: bytes) -> str:
    timestamp = int(time.time())
    digest = hmac.new(SECRET.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class StripeDeliveryUser(HttpUser):
    """Simulates Stripe delivering new events."""

    wait_time = between(0.05, 0.2)
    weight = 3

    @task
    def deliver_new_event(self) -> None:
        body = _event(f"evt_{uuid.uuid4().hex}")
        self.client.post("/webhooks/stripe", data=body, headers={"Stripe-Signature": _signature(body)})


class StripeRedeliveryUser(HttpUser):
    """Simulates Stripe retrying an event it already delivered."""

    wait_time = between(0.1, 0.5)
    weight = 1

    def on_start(self) -> None:
        self._body = _event(f"evt_{uuid.uuid4().hex}")
        self.client.post("/webhooks/stripe", data=self._body, headers={"Stripe-Signature": _signature(self._body)})

    @task
    def redeliver_event(self) -> None:
        with self.client.post(
            "/webhooks/stripe",
            data=self._body,
            headers={"Stripe-Signature": _signature(self._body)},
            catch_response=True,
        ) as resp:
            if resp.status_code == 200 and "alreadyProcessed" not in resp.json():
                resp.failure("redelivery was not recognised as a duplicate")


class ForgedDeliveryUser(HttpUser):
    """Sends unsigned payloads that must be rejected."""

    wait_time = between(0.5, 1.0)
    weight = 1

    @task
    def deliver_forged_event(self) -> None:
        with self.client.post(
            "/webhooks/stripe",
            data=_event(f"evt_{uuid.uuid4().hex}"),
            headers={"Stripe-Signature": "t=0,v1=forged"},
            catch_response=True,
        ) as resp:
            if resp.status_code == 400:
                resp.success()


class StatusCheckUser(HttpUser):
    """Polls stored event state and health."""

    wait_time = between(0.1, 0.5)
    weight = 1

    def on_start(self) -> None:
        self._stripe_event_id = f"evt_{uuid.uuid4().hex}"
        body = _event(self._stripe_event_id)
        self.client.post("/webhooks/stripe", data=body, headers={"Stripe-Signature": _signature(body)})

    @task(3)
    def get_status_by_stripe_event_id(self) -> None:
        self.client.get("/webhooks/events", params={"stripe_event_id": self._stripe_event_id}, name="/webhooks/events")

    @task(1)
    def get_exhausted(self) -> None:
        self.client.get("/webhooks/events/exhausted")

    @task(1)
    def get_health(self) -> None:
        self.client.get("/health")
