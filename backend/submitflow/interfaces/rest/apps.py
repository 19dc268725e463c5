from django.apps import AppConfig


class RestInterfaceConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "submitflow.interfaces.rest"
    label = "submitflow_rest"
    verbose_name = "SubmitFlow REST API"
