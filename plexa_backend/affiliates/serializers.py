from rest_framework import serializers

from .models import Affiliate, AffiliatePayout


class AffiliateSerializer(serializers.ModelSerializer):
    referrals = serializers.IntegerField(source="referrals.count", read_only=True)

    class Meta:
        model = Affiliate
        fields = (
            "referral_code",
            "commission_rate",
            "balance",
            "total_earned",
            "is_active",
            "referrals",
            "created_at",
        )
        read_only_fields = fields


class PayoutSerializer(serializers.ModelSerializer):
    class Meta:
        model = AffiliatePayout
        fields = ("id", "amount", "status", "payment_method", "paid_at", "created_at")
        read_only_fields = ("id", "status", "paid_at", "created_at")


class PayoutRequestSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=15, decimal_places=2)
    payment_method = serializers.CharField(max_length=100, default="Credits")


class ReferralSerializer(serializers.Serializer):
    referral_code = serializers.CharField(max_length=50)
