from rest_framework.routers import DefaultRouter

from django.urls import include, path

from .views import InvoiceViewSet, TopupView

router = DefaultRouter()
router.register("invoices", InvoiceViewSet, basename="invoices")

urlpatterns = [
    path("topup/", TopupView.as_view(), name="billing-topup"),
    path("", include(router.urls)),
]
