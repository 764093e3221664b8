from __future__ import annotations

from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from .models import Setting
from .services import settings_provider


@receiver(post_save, sender=Setting)
@receiver(post_delete, sender=Setting)
def invalidate_settings_cache(sender, **kwargs):
    settings_provider.invalidate()
