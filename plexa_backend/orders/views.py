from __future__ import annotations

import logging

from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from main.models import ActiveServer
from main.utilities.api import error_response
from payments.models import PendingPayment
from payments.services import mark_reconciled

from .serializers import (
    CheckoutSerializer,
    PendingPaymentSerializer,
    ReconcileSerializer,
    ServerSerializer,
    checkout_result_data,
)
from .services.exceptions import BusinessError
from .services.order_service import CheckoutRequest, OrderService, OrderState

logger = logging.getLogger(__name__)

RESULT_STATUS = {
    OrderState.RECORDED: status.HTTP_201_CREATED,
    OrderState.PAYMENT_PENDING: status.HTTP_202_ACCEPTED,
    OrderState.PROVISION_FAILED: status.HTTP_202_ACCEPTED,
    OrderState.PAYMENT_FAILED: status.HTTP_402_PAYMENT_REQUIRED,
}


class CheckoutView(APIView):
    permission_classes = [IsAuthenticated]
    service_class = OrderService

    def post(self, request):
        serializer = CheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = self.service_class().checkout(
                request.user, CheckoutRequest(**serializer.validated_data)
            )
        except BusinessError as exc:
            return error_response(exc)
        return Response(
            checkout_result_data(result),
            status=RESULT_STATUS.get(result.state, status.HTTP_200_OK),
        )


class ServerViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    serializer_class = ServerSerializer
    permission_classes = [IsAuthenticated]
    service_class = OrderService

    def get_queryset(self):
        return ActiveServer.objects.select_related("plan", "location").filter(
            user=self.request.user
        )

    @action(detail=True, methods=["post"])
    def retry(self, request, pk=None):
        server = self.get_object()
        try:
            result = self.service_class().retry_provisioning(server)
        except BusinessError as exc:
            return error_response(exc)
        return Response(
            checkout_result_data(result),
            status=RESULT_STATUS.get(result.state, status.HTTP_200_OK),
        )

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        server = self.get_object()
        if not self.service_class().cancel(server):
            return Response(
                {"error": "This server cannot be cancelled."},
                status=status.HTTP_409_CONFLICT,
            )
        return Response(self.get_serializer(server).data)


class ReconciliationViewSet(mixins.ListModelMixin, viewsets.GenericViewSet):
    """Externally captured payments that never produced a server."""

    serializer_class = PendingPaymentSerializer
    permission_classes = [IsAuthenticated, IsAdminUser]

    def get_queryset(self):
        return OrderService.list_needing_reconciliation()

    @action(detail=True, methods=["post"])
    def resolve(self, request, pk=None):
        pending = self.get_object()
        body = ReconcileSerializer(data=request.data)
        body.is_valid(raise_exception=True)
        if not mark_reconciled(pending, body.validated_data["note"]):
            return Response(
                {"error": "Payment is no longer awaiting reconciliation."},
                status=status.HTTP_409_CONFLICT,
            )
        logger.info(
            "Payment %s reconciled by %s", pending.merchant_order_id, request.user.pk
        )
        return Response(self.get_serializer(pending).data)
