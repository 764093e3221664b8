from django.apps import AppConfig


class AppSettingsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "app_settings"
    verbose_name = "Runtime Settings"

    def ready(self) -> None:
        # Import signal handlers
        from . import signals  # noqa: F401
