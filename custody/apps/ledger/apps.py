from django.apps import AppConfig


class LedgerConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "custody.apps.ledger"
    verbose_name = "Ledger"
