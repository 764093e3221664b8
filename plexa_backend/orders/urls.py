from rest_framework.routers import DefaultRouter

from django.urls import include, path

from .views import CheckoutView, ReconciliationViewSet, ServerViewSet

router = DefaultRouter()
router.register("servers", ServerViewSet, basename="servers")
router.register("reconciliation", ReconciliationViewSet, basename="reconciliation")

urlpatterns = [
    path("checkout/", CheckoutView.as_view(), name="orders-checkout"),
    path("", include(router.urls)),
]
