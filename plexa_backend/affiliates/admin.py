from django.contrib import admin

from .models import Affiliate, AffiliatePayout, Referral


@admin.register(Affiliate)
class AffiliateAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "user",
        "referral_code",
        "commission_rate",
        "balance",
        "total_earned",
        "is_active",
    )
    list_filter = ("is_active",)
    search_fields = ("referral_code", "user__email", "user__username")


@admin.register(Referral)
class ReferralAdmin(admin.ModelAdmin):
    list_display = ("id", "affiliate", "referred_user", "status", "created_at")


@admin.register(AffiliatePayout)
class AffiliatePayoutAdmin(admin.ModelAdmin):
    list_display = ("id", "affiliate", "amount", "status", "payment_method", "created_at")
    list_filter = ("status",)
