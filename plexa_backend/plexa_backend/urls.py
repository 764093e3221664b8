from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/orders/", include("orders.urls")),
    path("api/payments/", include("payments.urls")),
    path("api/billing/", include("billing_management.urls")),
    path("api/affiliates/", include("affiliates.urls")),
]
