from django.contrib import admin

from .models import PaymentGateway, Setting


@admin.register(Setting)
class SettingAdmin(admin.ModelAdmin):
    list_display = ("key", "value", "updated_at")
    search_fields = ("key",)


@admin.register(PaymentGateway)
class PaymentGatewayAdmin(admin.ModelAdmin):
    list_display = ("name", "display_name", "enabled", "updated_at")
    list_filter = ("enabled",)
