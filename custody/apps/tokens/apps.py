from django.apps import AppConfig


class TokensConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'custody.apps.tokens'
    verbose_name = 'Tokens'

    def ready(self):
        import custody.apps.tokens.signals  # noqa
