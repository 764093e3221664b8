from __future__ import annotations

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from main.utilities.api import error_response
from orders.services.exceptions import BusinessError

from . import services
from .models import Affiliate
from .serializers import (
    AffiliateSerializer,
    PayoutRequestSerializer,
    PayoutSerializer,
    ReferralSerializer,
)


class AffiliateView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        affiliate = Affiliate.objects.filter(user=request.user).first()
        if affiliate is None:
            return Response({"error": "Not an affiliate."}, status=status.HTTP_404_NOT_FOUND)
        return Response(AffiliateSerializer(affiliate).data)

    def post(self, request):
        try:
            affiliate = services.join(request.user)
        except BusinessError as exc:
            return error_response(exc)
        return Response(AffiliateSerializer(affiliate).data, status=status.HTTP_201_CREATED)


class ReferralView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        body = ReferralSerializer(data=request.data)
        body.is_valid(raise_exception=True)
        referral = services.attach_referral(request.user, body.validated_data["referral_code"])
        if referral is None:
            return Response(
                {"error": "Referral code not applicable."}, status=status.HTTP_400_BAD_REQUEST
            )
        return Response({"affiliate": referral.affiliate.referral_code})


class PayoutView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        affiliate = Affiliate.objects.filter(user=request.user).first()
        payouts = affiliate.payouts.all() if affiliate else []
        return Response(PayoutSerializer(payouts, many=True).data)

    def post(self, request):
        affiliate = Affiliate.objects.filter(user=request.user, is_active=True).first()
        if affiliate is None:
            return Response({"error": "Not an affiliate."}, status=status.HTTP_404_NOT_FOUND)
        body = PayoutRequestSerializer(data=request.data)
        body.is_valid(raise_exception=True)
        try:
            payout = services.request_payout(
                affiliate,
                body.validated_data["amount"],
                body.validated_data["payment_method"],
            )
        except BusinessError as exc:
            return error_response(exc)
        return Response(PayoutSerializer(payout).data, status=status.HTTP_201_CREATED)
