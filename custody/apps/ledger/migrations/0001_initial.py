import uuid

import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Deposit",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("user_address", models.CharField(db_index=True, max_length=64)),
                ("chain_id", models.PositiveBigIntegerField(db_index=True)),
                ("source_tx_hash", models.CharField(max_length=128)),
                (
                    "token_type",
                    models.CharField(
                        choices=[("USDT", "USDT"), ("MockUSDT", "Mock USDT")], default="USDT", max_length=16
                    ),
                ),
                ("amount", models.BigIntegerField()),
                ("current_balance", models.BigIntegerField()),
                ("accumulated_yield", models.BigIntegerField(default=0)),
                ("is_test_data", models.BooleanField(db_index=True, default=False)),
                ("last_redeemed_at", models.DateTimeField(blank=True, null=True)),
                ("last_redeemed_amount", models.BigIntegerField(blank=True, null=True)),
                ("last_redeemed_tx_hash", models.CharField(blank=True, max_length=128, null=True)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["created_at", "id"],
                "indexes": [
                    models.Index(
                        fields=["user_address", "chain_id", "created_at"], name="deposit_user_chain_created_idx"
                    )
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("chain_id", "source_tx_hash"), name="deposit_unique_chain_tx"),
                    models.CheckConstraint(
                        condition=models.Q(("current_balance__gte", 0)), name="deposit_balance_non_negative"
                    ),
                    models.CheckConstraint(condition=models.Q(("amount__gt", 0)), name="deposit_amount_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ReserveLedger",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("chain_id", models.PositiveBigIntegerField(unique=True)),
                ("total_reserve", models.BigIntegerField(default=0)),
                ("notes", models.TextField(blank=True, default="")),
                ("last_updated", models.DateTimeField(default=django.utils.timezone.now)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("total_reserve__gte", 0)), name="reserve_non_negative")
                ],
            },
        ),
    ]
