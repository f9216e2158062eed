from django.contrib import admin
from .models import RedemptionLog


@admin.register(RedemptionLog)
class RedemptionLogAdmin(admin.ModelAdmin):
    list_display = (
        "user_address",
        "chain_id",
        "amount",
        "status",
        "tx_id",
        "dry_run",
        "on_chain_success",
        "created_at",
    )
    list_filter = ("status", "chain_id", "dry_run", "on_chain_success", "rolled_back")
    search_fields = ("user_address", "tx_id", "idempotency_key")
    date_hierarchy = "created_at"

    def has_delete_permission(self, request, obj=None):
        return False
