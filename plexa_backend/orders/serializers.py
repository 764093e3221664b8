from __future__ import annotations

from rest_framework import serializers

from main.models import ActiveServer, Invoice
from payments.models import PendingPayment


class CheckoutSerializer(serializers.Serializer):
    plan_id = serializers.IntegerField()
    location_id = serializers.IntegerField()
    payment_method = serializers.CharField(max_length=32, default="credits")
    server_name = serializers.CharField(max_length=191, required=False, allow_blank=True, default="")
    coupon_code = serializers.CharField(max_length=40, required=False, allow_blank=True, default="")
    billing_address = serializers.CharField(required=False, allow_blank=True, default="")
    gst_number = serializers.CharField(max_length=32, required=False, allow_blank=True, default="")
    nest_id = serializers.IntegerField(required=False, allow_null=True, default=None)
    egg_id = serializers.IntegerField(required=False, allow_null=True, default=None)
    env_overrides = serializers.DictField(
        child=serializers.CharField(allow_blank=True), required=False, default=dict
    )


class InvoiceSerializer(serializers.ModelSerializer):
    class Meta:
        model = Invoice
        fields = (
            "id",
            "amount",
            "currency_code",
            "currency_amount",
            "subtotal",
            "tax_rate",
            "tax_amount",
            "status",
            "type",
            "description",
            "due_date",
            "payment_method",
            "transaction_id",
            "paid_at",
            "created_at",
        )
        read_only_fields = fields


class ServerSerializer(serializers.ModelSerializer):
    plan = serializers.StringRelatedField()
    location = serializers.StringRelatedField()

    class Meta:
        model = ActiveServer
        fields = (
            "id",
            "server_name",
            "plan",
            "location",
            "status",
            "ptero_identifier",
            "renewal_date",
            "suspended_at",
            "failure_reason",
            "radar_status",
            "radar_last_scan",
            "created_at",
        )
        read_only_fields = fields


class PendingPaymentSerializer(serializers.ModelSerializer):
    user = serializers.StringRelatedField()

    class Meta:
        model = PendingPayment
        fields = (
            "id",
            "merchant_order_id",
            "user",
            "purpose",
            "gateway",
            "gateway_reference",
            "amount",
            "currency_code",
            "status",
            "external_transaction_id",
            "failure_reason",
            "reconciliation_note",
            "created_at",
            "resolved_at",
        )
        read_only_fields = fields


class ReconcileSerializer(serializers.Serializer):
    note = serializers.CharField(max_length=2000)


def checkout_result_data(result) -> dict:
    data = {
        "state": result.state,
        "message": result.message,
        "duplicate": result.duplicate,
        "redirect_url": result.redirect_url,
        "server": ServerSerializer(result.server).data if result.server else None,
        "invoice": InvoiceSerializer(result.invoice).data if result.invoice else None,
    }
    if result.pending_payment is not None:
        data["merchant_order_id"] = result.pending_payment.merchant_order_id
    if result.panel_password:
        data["panel_password"] = result.panel_password
    return data
