"""
Payment Gateway Mocks
=====================

Stripe, PayPal and PhonePe endpoints backed by in-memory state. Each mock
registers itself on a ``responses.RequestsMock`` and exposes helpers to
move a payment to paid / failed the way the provider would after the buyer
returns.
"""

import json
import re
from decimal import Decimal
from typing import Any, Dict
from urllib.parse import parse_qs


def _as_callback(func):
    def _callback(request):
        status, payload = func(request)
        return status, {"Content-Type": "application/json"}, json.dumps(payload, default=str)

    return _callback


class StripeMock:
    """Stripe Checkout Sessions"""

    api_url = "https://api.stripe.com/v1"

    def __init__(self):
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.counter = 1
        self.reject_auth = False

    def register_responses(self, responses_mock):
        responses_mock.add_callback(
            "POST", f"{self.api_url}/checkout/sessions", callback=_as_callback(self._create)
        )
        responses_mock.add_callback(
            "GET",
            re.compile(rf"{re.escape(self.api_url)}/checkout/sessions/[^/?]+$"),
            callback=_as_callback(self._retrieve),
        )

    def _create(self, request):
        if self.reject_auth:
            return 401, {"error": {"message": "Invalid API Key provided"}}
        form = {k: v[0] for k, v in parse_qs(request.body).items()}
        session_id = f"cs_test_{self.counter}"
        self.counter += 1
        self.sessions[session_id] = {
            "id": session_id,
            "object": "checkout.session",
            "url": f"https://checkout.stripe.test/pay/{session_id}",
            "amount_total": int(form["line_items[0][price_data][unit_amount]"]),
            "currency": form["line_items[0][price_data][currency]"],
            "client_reference_id": form.get("client_reference_id"),
            "payment_status": "unpaid",
            "status": "open",
            "payment_intent": None,
        }
        return 200, self.sessions[session_id]

    def _retrieve(self, request):
        session_id = request.url.rstrip("/").split("/")[-1]
        session = self.sessions.get(session_id)
        if session is None:
            return 404, {"error": {"message": "No such checkout.session"}}
        return 200, session

    def pay(self, session_id: str, amount_total: int = None):
        session = self.sessions[session_id]
        session.update(payment_status="paid", status="complete", payment_intent=f"pi_{session_id}")
        if amount_total is not None:
            session["amount_total"] = amount_total

    def expire(self, session_id: str):
        self.sessions[session_id].update(status="expired")


class PayPalMock:
    """PayPal Orders v2 (sandbox host)"""

    api_url = "https://api-m.sandbox.paypal.com"

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.counter = 1
        self.captures = 0

    def register_responses(self, responses_mock):
        responses_mock.add_callback(
            "POST", f"{self.api_url}/v1/oauth2/token", callback=_as_callback(self._token)
        )
        responses_mock.add_callback(
            "POST", f"{self.api_url}/v2/checkout/orders", callback=_as_callback(self._create)
        )
        responses_mock.add_callback(
            "POST",
            re.compile(rf"{re.escape(self.api_url)}/v2/checkout/orders/[^/]+/capture$"),
            callback=_as_callback(self._capture),
        )
        responses_mock.add_callback(
            "GET",
            re.compile(rf"{re.escape(self.api_url)}/v2/checkout/orders/[^/]+$"),
            callback=_as_callback(self._get),
        )

    def _token(self, request):
        return 200, {"access_token": "A21AA-test-token", "expires_in": 32400}

    def _create(self, request):
        body = json.loads(request.body)
        order_id = f"PAYPAL{self.counter:05d}"
        self.counter += 1
        unit = body["purchase_units"][0]
        self.orders[order_id] = {
            "id": order_id,
            "status": "CREATED",
            "amount": unit["amount"],
            "approved": False,
        }
        return 201, {
            "id": order_id,
            "status": "CREATED",
            "links": [
                {"rel": "self", "href": f"{self.api_url}/v2/checkout/orders/{order_id}"},
                {"rel": "approve", "href": f"https://www.sandbox.paypal.test/checkoutnow?token={order_id}"},
            ],
        }

    def _order_body(self, order):
        body = {"id": order["id"], "status": order["status"]}
        if order["status"] == "COMPLETED":
            body["purchase_units"] = [
                {
                    "payments": {
                        "captures": [
                            {"id": f"CAP-{order['id']}", "amount": order["amount"], "status": "COMPLETED"}
                        ]
                    }
                }
            ]
        return body

    def _capture(self, request):
        order_id = request.url.split("/")[-2]
        order = self.orders.get(order_id)
        if order is None:
            return 404, {"name": "RESOURCE_NOT_FOUND"}
        if order["status"] == "COMPLETED":
            return 422, {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]}
        if not order["approved"]:
            return 422, {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_NOT_APPROVED"}]}
        order["status"] = "COMPLETED"
        self.captures += 1
        return 201, self._order_body(order)

    def _get(self, request):
        order = self.orders.get(request.url.rstrip("/").split("/")[-1])
        if order is None:
            return 404, {"name": "RESOURCE_NOT_FOUND"}
        return 200, self._order_body(order)

    def approve(self, order_id: str):
        self.orders[order_id]["approved"] = True
        self.orders[order_id]["status"] = "APPROVED"


class PhonePeMock:
    """PhonePe Standard Checkout v2 (sandbox host)"""

    api_url = "https://api-preprod.phonepe.com/apis/pg-sandbox"

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.token_requests = []

    def register_responses(self, responses_mock):
        responses_mock.add_callback(
            "POST", f"{self.api_url}/v1/oauth/token", callback=_as_callback(self._token)
        )
        responses_mock.add_callback(
            "POST", f"{self.api_url}/checkout/v2/pay", callback=_as_callback(self._pay)
        )
        responses_mock.add_callback(
            "GET",
            re.compile(rf"{re.escape(self.api_url)}/checkout/v2/order/[^/]+/status$"),
            callback=_as_callback(self._status),
        )

    def _token(self, request):
        self.token_requests.append({k: v[0] for k, v in parse_qs(request.body).items()})
        return 200, {"access_token": "phonepe-token", "expires_at": 9999999999}

    def _pay(self, request):
        body = json.loads(request.body)
        mid = body["merchantOrderId"]
        self.orders[mid] = {"orderId": f"OMO{mid}", "state": "PENDING", "amount": body["amount"]}
        return 200, {
            "orderId": f"OMO{mid}",
            "state": "PENDING",
            "redirectUrl": f"https://mercury-uat.phonepe.test/transact/{mid}",
        }

    def _status(self, request):
        mid = request.url.split("/")[-2]
        order = self.orders.get(mid)
        if order is None:
            return 404, {"code": "ORDER_NOT_FOUND"}
        body = dict(order)
        if order["state"] == "COMPLETED":
            body["paymentDetails"] = [{"transactionId": f"T{mid}", "state": "COMPLETED"}]
        return 200, body

    def complete(self, merchant_order_id: str, amount_paise: int = None):
        order = self.orders[merchant_order_id]
        order["state"] = "COMPLETED"
        if amount_paise is not None:
            order["amount"] = amount_paise

    def fail(self, merchant_order_id: str):
        self.orders[merchant_order_id]["state"] = "FAILED"

    @staticmethod
    def paise(amount) -> int:
        return int(Decimal(str(amount)) * 100)
