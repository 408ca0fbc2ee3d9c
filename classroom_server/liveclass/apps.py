from django.apps import AppConfig


class LiveClassConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "liveclass"
    verbose_name = "Live classes"
