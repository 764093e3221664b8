from django.urls import path

from .views import AffiliateView, PayoutView, ReferralView

urlpatterns = [
    path("", AffiliateView.as_view(), name="affiliates-me"),
    path("referral/", ReferralView.as_view(), name="affiliates-referral"),
    path("payouts/", PayoutView.as_view(), name="affiliates-payouts"),
]
