import uuid

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="RedemptionLog",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("idempotency_key", models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ("user_address", models.CharField(db_index=True, max_length=64)),
                ("chain_id", models.PositiveBigIntegerField(db_index=True)),
                ("token_type", models.CharField(default="USDT", max_length=16)),
                ("amount", models.BigIntegerField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("settled", "Settled"),
                            ("failed", "Failed"),
                            ("ambiguous", "Ambiguous"),
                            ("released", "Released"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("reserve_before", models.BigIntegerField(blank=True, null=True)),
                ("reserve_after", models.BigIntegerField(blank=True, null=True)),
                ("balance_after", models.BigIntegerField(blank=True, null=True)),
                ("debits", models.JSONField(blank=True, default=list)),
                ("dry_run", models.BooleanField(default=False)),
                ("tx_id", models.CharField(blank=True, db_index=True, max_length=128, null=True)),
                ("on_chain_success", models.BooleanField(default=False)),
                ("transfer_error", models.TextField(blank=True, null=True)),
                ("error_kind", models.CharField(blank=True, max_length=32, null=True)),
                ("rolled_back", models.BooleanField(default=False)),
                ("block_number", models.BigIntegerField(blank=True, null=True)),
                ("gas_used", models.CharField(blank=True, max_length=32, null=True)),
                ("confirmed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(db_index=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["user_address", "chain_id", "created_at"], name="redemption_user_chain_idx"
                    )
                ],
            },
        ),
    ]
