from django.contrib import admin

from .models import PendingPayment


@admin.register(PendingPayment)
class PendingPaymentAdmin(admin.ModelAdmin):
    list_display = ("merchant_order_id", "user", "purpose", "gateway", "amount", "currency_code", "status", "created_at")
    list_filter = ("status", "gateway", "purpose")
    search_fields = ("merchant_order_id", "gateway_reference", "external_transaction_id", "user__email")
    readonly_fields = ("payload", "created_at", "resolved_at")
