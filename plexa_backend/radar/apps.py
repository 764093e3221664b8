from django.apps import AppConfig


class RadarConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "radar"
    verbose_name = "Abuse radar"
