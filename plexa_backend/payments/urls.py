from django.urls import path

from .views import PaymentCallbackView

urlpatterns = [
    path("callback/", PaymentCallbackView.as_view(), name="payments-callback"),
    path(
        "callback/<str:gateway>/",
        PaymentCallbackView.as_view(),
        name="payments-callback-gateway",
    ),
]
