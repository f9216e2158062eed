from django.core.signals import setting_changed
from django.dispatch import receiver

from .clients import invalidate

CLIENT_SETTINGS = {
    "SUPPORTED_CHAINS",
    "USDT_ABI_PATH",
    "TRANSFER_TIMEOUT_SECONDS",
}


@receiver(setting_changed, dispatch_uid="tokens_invalidate_chain_clients")
def invalidate_chain_clients(sender, setting, **kwargs):
    if setting in CLIENT_SETTINGS:
        invalidate()
