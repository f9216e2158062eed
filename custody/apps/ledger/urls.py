from django.urls import path

from .views import (
    balance_view,
    credit_deposit_view,
    deposit_by_tx_view,
    redeem_view,
    reserve_status_view,
)

urlpatterns = [
    path("redeem", redeem_view, name="redeem"),
    path("reserve-status", reserve_status_view, name="reserve-status"),
    path("deposits", credit_deposit_view, name="credit-deposit"),
    path("deposits/tx/<str:tx_hash>", deposit_by_tx_view, name="deposit-by-tx"),
    path("deposits/<str:address>", balance_view, name="deposit-balance"),
]
