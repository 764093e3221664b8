from __future__ import annotations

from rest_framework import mixins, serializers, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from main.models import Invoice
from main.utilities.api import error_response
from orders.serializers import InvoiceSerializer
from orders.services.exceptions import BusinessError

from .billing_services import pay_invoice_with_credits, start_invoice_payment, start_topup


class PaymentMethodSerializer(serializers.Serializer):
    payment_method = serializers.CharField(max_length=32, default="credits")


class TopupSerializer(PaymentMethodSerializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=1)


def _redirect_response(result):
    return Response(
        {"redirect_url": result.target, "reference": result.reference},
        status=status.HTTP_202_ACCEPTED,
    )


class InvoiceViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    serializer_class = InvoiceSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        qs = Invoice.objects.filter(user=self.request.user)
        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    @action(detail=True, methods=["post"])
    def pay(self, request, pk=None):
        invoice = self.get_object()
        body = PaymentMethodSerializer(data=request.data)
        body.is_valid(raise_exception=True)
        method = body.validated_data["payment_method"].strip().lower()
        try:
            if method == "credits":
                invoice = pay_invoice_with_credits(request.user, invoice)
                return Response(self.get_serializer(invoice).data)
            return _redirect_response(start_invoice_payment(request.user, invoice, method))
        except BusinessError as exc:
            return error_response(exc)


class TopupView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        body = TopupSerializer(data=request.data)
        body.is_valid(raise_exception=True)
        try:
            result = start_topup(
                request.user,
                body.validated_data["amount"],
                body.validated_data["payment_method"],
            )
        except BusinessError as exc:
            return error_response(exc)
        return _redirect_response(result)
