from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from billing_management.billing_services import complete_invoice_payment, complete_topup
from main.utilities.api import error_response
from orders.serializers import InvoiceSerializer, checkout_result_data
from orders.services.exceptions import BusinessError
from orders.services.order_service import OrderService

from .models import PendingPayment
from .services import resolve_callback

logger = logging.getLogger(__name__)


class PaymentCallbackView(APIView):
    """
    Buyer lands here after the gateway redirect. Only ``merchant_order_id``
    is trusted; the outcome is always re-confirmed with the gateway.
    """

    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, gateway=None):
        merchant_order_id = (
            request.query_params.get("merchant_order_id")
            or request.query_params.get("merchantOrderId")
            or ""
        ).strip()
        if not merchant_order_id:
            return Response(
                {"error": "Missing merchant_order_id."}, status=status.HTTP_400_BAD_REQUEST
            )

        pending = PendingPayment.objects.filter(merchant_order_id=merchant_order_id).first()
        if pending is None or (gateway and pending.gateway != gateway):
            return Response(
                {"error": "Unknown payment reference."}, status=status.HTTP_404_NOT_FOUND
            )

        try:
            if pending.purpose == PendingPayment.Purpose.CHECKOUT:
                result = OrderService().complete_callback(merchant_order_id)
                return Response(checkout_result_data(result))

            outcome = resolve_callback(merchant_order_id, purpose=pending.purpose)
            if pending.purpose == PendingPayment.Purpose.INVOICE:
                invoice = complete_invoice_payment(outcome)
                return Response(
                    {
                        "state": outcome.state,
                        "invoice": InvoiceSerializer(invoice).data if invoice else None,
                    }
                )
            balance = complete_topup(outcome)
            return Response({"state": outcome.state, "balance": balance})
        except BusinessError as exc:
            logger.warning("Callback %s rejected: %s", merchant_order_id, exc.message)
            return error_response(exc)
