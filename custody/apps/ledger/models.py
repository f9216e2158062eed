# custody/ledger/models.py
import uuid
from django.db import models
from django.utils import timezone


class Deposit(models.Model):
    """One confirmed on-chain funding event and its remaining drawable balance.

    Amounts are integer micro-USDT (6 decimals), mirroring the token's base unit.
    """

    TOKEN_CHOICES = [("USDT", "USDT"), ("MockUSDT", "Mock USDT")]
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user_address = models.CharField(max_length=64, db_index=True)  # lowercased
    chain_id = models.PositiveBigIntegerField(db_index=True)
    source_tx_hash = models.CharField(max_length=128)  # lowercased
    token_type = models.CharField(max_length=16, choices=TOKEN_CHOICES, default="USDT")
    amount = models.BigIntegerField()  # immutable once written
    current_balance = models.BigIntegerField()
    accumulated_yield = models.BigIntegerField(default=0)
    is_test_data = models.BooleanField(default=False, db_index=True)

    last_redeemed_at = models.DateTimeField(null=True, blank=True)
    last_redeemed_amount = models.BigIntegerField(null=True, blank=True)
    last_redeemed_tx_hash = models.CharField(max_length=128, null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(
                fields=["user_address", "chain_id", "created_at"],
                name="deposit_user_chain_created_idx",
            )
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["chain_id", "source_tx_hash"], name="deposit_unique_chain_tx"
            ),
            models.CheckConstraint(
                condition=models.Q(current_balance__gte=0),
                name="deposit_balance_non_negative",
            ),
            models.CheckConstraint(
                condition=models.Q(amount__gt=0), name="deposit_amount_positive"
            ),
        ]

    def __str__(self):
        return f"Deposit({self.user_address} @ {self.chain_id}: {self.current_balance})"


class ReserveLedger(models.Model):
    """Pool of settled funds backing redemptions on one chain."""

    chain_id = models.PositiveBigIntegerField(unique=True)
    total_reserve = models.BigIntegerField(default=0)  # micro-USDT
    notes = models.TextField(blank=True, default="")
    last_updated = models.DateTimeField(default=timezone.now)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=models.Q(total_reserve__gte=0),
                name="reserve_non_negative",
            ),
        ]

    def __str__(self):
        return f"Reserve({self.chain_id}: {self.total_reserve})"
