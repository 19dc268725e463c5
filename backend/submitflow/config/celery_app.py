"""Celery application instance for SubmitFlow."""

from __future__ import annotations

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "submitflow.config.settings")

app = Celery("submitflow")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks(lambda: ["submitflow.application", "submitflow.asyncrequests"])
