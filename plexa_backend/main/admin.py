from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from .models import ActiveServer, Coupon, Currency, Invoice, Location, Plan, PlanPrice, User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ("username", "email", "balance", "preferred_currency", "panel_account_id")
    search_fields = ("email", "username")
    fieldsets = BaseUserAdmin.fieldsets + (
        (
            "Billing",
            {
                "fields": (
                    "balance",
                    "preferred_currency",
                    "panel_account_id",
                    "referred_by",
                    "billing_address",
                    "gst_number",
                )
            },
        ),
    )


@admin.register(Currency)
class CurrencyAdmin(admin.ModelAdmin):
    list_display = ("code", "symbol", "rate_to_usd", "is_active")


@admin.register(Location)
class LocationAdmin(admin.ModelAdmin):
    list_display = ("short", "long_name", "panel_location_id", "multiplier", "is_public", "is_sold_out")


class PlanPriceInline(admin.TabularInline):
    model = PlanPrice
    extra = 0


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    list_display = ("name", "price", "billing_period", "ram", "cpu", "disk", "is_visible", "is_out_of_stock")
    list_filter = ("billing_period", "is_visible", "is_out_of_stock")
    inlines = [PlanPriceInline]


@admin.register(Coupon)
class CouponAdmin(admin.ModelAdmin):
    list_display = ("code", "discount_percent", "uses", "max_uses", "is_active")
    search_fields = ("code",)


@admin.register(ActiveServer)
class ActiveServerAdmin(admin.ModelAdmin):
    list_display = ("id", "server_name", "user", "plan", "status", "renewal_date", "radar_status")
    list_filter = ("status", "radar_status")
    search_fields = ("server_name", "ptero_identifier", "user__email")
    readonly_fields = ("order_payload", "radar_details", "created_at", "updated_at")


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "type", "amount", "currency_code", "currency_amount", "status", "due_date")
    list_filter = ("status", "type")
    search_fields = ("transaction_id", "user__email")
