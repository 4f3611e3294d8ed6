from django.apps import AppConfig


class TranscoderConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "transcoder"
    verbose_name = "Elastic Transcoder jobs"
