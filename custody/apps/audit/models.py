import uuid
from django.db import models


class RedemptionLog(models.Model):
    """Append-only audit record of one redemption attempt.

    Financial fields (amount, reserve_before/after, debits) are written once
    when the attempt reserves funds. Only outcome fields move afterwards.
    """

    STATUS = [
        ("pending", "Pending"),
        ("settled", "Settled"),
        ("failed", "Failed"),
        ("ambiguous", "Ambiguous"),
        ("released", "Released"),
    ]
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    idempotency_key = models.CharField(max_length=64, unique=True, null=True, blank=True)
    user_address = models.CharField(max_length=64, db_index=True)
    chain_id = models.PositiveBigIntegerField(db_index=True)
    token_type = models.CharField(max_length=16, default="USDT")
    amount = models.BigIntegerField()  # micro-USDT
    status = models.CharField(max_length=16, choices=STATUS, default="pending", db_index=True)

    reserve_before = models.BigIntegerField(null=True, blank=True)
    reserve_after = models.BigIntegerField(null=True, blank=True)
    balance_after = models.BigIntegerField(null=True, blank=True)
    debits = models.JSONField(default=list, blank=True)  # [{deposit_id, amount, previous_*}]
    dry_run = models.BooleanField(default=False)

    tx_id = models.CharField(max_length=128, null=True, blank=True, db_index=True)
    on_chain_success = models.BooleanField(default=False)
    transfer_error = models.TextField(null=True, blank=True)
    error_kind = models.CharField(max_length=32, null=True, blank=True)
    rolled_back = models.BooleanField(default=False)
    block_number = models.BigIntegerField(null=True, blank=True)
    gas_used = models.CharField(max_length=32, null=True, blank=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["user_address", "chain_id", "created_at"],
                name="redemption_user_chain_idx",
            )
        ]
