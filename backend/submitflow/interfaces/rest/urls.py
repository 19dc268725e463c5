"""API URL routes for the SubmitFlow REST interface."""

from __future__ import annotations

from django.urls import path

from submitflow.interfaces.rest.views import (
    AsyncRequestStatusView,
    VatObligationsView,
    VatReturnView,
)

urlpatterns = [
    path("vat/returns/", VatReturnView.as_view(), name="vat-return-submit"),
    path("vat/obligations/", VatObligationsView.as_view(), name="vat-obligations"),
    path(
        "async-requests/<str:request_id>/",
        AsyncRequestStatusView.as_view(),
        name="async-request-status",
    ),
]
