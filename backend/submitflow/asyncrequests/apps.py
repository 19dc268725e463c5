from django.apps import AppConfig


class AsyncRequestsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "submitflow.asyncrequests"
    verbose_name = "Asynchronous Requests"
