from django.contrib import admin
from .models import Deposit, ReserveLedger


@admin.register(Deposit)
class DepositAdmin(admin.ModelAdmin):
    list_display = (
        "user_address",
        "chain_id",
        "amount",
        "current_balance",
        "source_tx_hash",
        "is_test_data",
        "created_at",
    )
    list_filter = ("chain_id", "token_type", "is_test_data")
    search_fields = ("user_address", "source_tx_hash", "last_redeemed_tx_hash")
    date_hierarchy = "created_at"
    readonly_fields = ("amount", "source_tx_hash", "chain_id", "user_address")


@admin.register(ReserveLedger)
class ReserveLedgerAdmin(admin.ModelAdmin):
    list_display = ("chain_id", "total_reserve", "last_updated", "notes")
    readonly_fields = ("total_reserve",)
