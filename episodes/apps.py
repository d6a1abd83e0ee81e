from __future__ import annotations

from django.apps import AppConfig


class EpisodesConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "episodes"
    verbose_name = "Episode generation scheduling"
