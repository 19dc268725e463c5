"""Serializers bridging HTTP payloads and execution units."""

from __future__ import annotations

import re

from django.utils import timezone
from rest_framework import serializers

VRN_PATTERN = re.compile(r"^\d{9}$")
PERIOD_KEY_PATTERN = re.compile(r"^(\d{2}[A-Z]\d|#\d{3})$")


class VatReturnSerializer(serializers.Serializer):
    vatNumber = serializers.CharField()
    periodKey = serializers.CharField()
    vatDue = serializers.DecimalField(max_digits=13, decimal_places=2)
    accessToken = serializers.CharField(trim_whitespace=True)

    def validate_vatNumber(self, value: str) -> str:
        if not VRN_PATTERN.match(value):
            raise serializers.ValidationError("Invalid vatNumber format - must be 9 digits")
        return value

    def validate_periodKey(self, value: str) -> str:
        normalized = value.upper()
        if not PERIOD_KEY_PATTERN.match(normalized):
            raise serializers.ValidationError("Invalid periodKey format")
        return normalized


class VatObligationQuerySerializer(serializers.Serializer):
    """Query string of an obligations lookup; the range defaults to this calendar year."""

    vrn = serializers.CharField()
    to = serializers.DateField(required=False)
    status = serializers.ChoiceField(choices=["O", "F"], required=False)

    def get_fields(self):
        fields = super().get_fields()
        # `from` is a keyword, so it cannot be declared as a class attribute.
        fields["from"] = serializers.DateField(required=False)
        return fields

    def validate_vrn(self, value: str) -> str:
        if not VRN_PATTERN.match(value):
            raise serializers.ValidationError("Invalid vrn format - must be 9 digits")
        return value

    def validate(self, attrs):
        today = timezone.now().date()
        attrs.setdefault("from", today.replace(month=1, day=1))
        attrs.setdefault("to", today)
        if attrs["from"] > attrs["to"]:
            raise serializers.ValidationError("Invalid date range - from date cannot be after to date")
        return attrs


class AsyncRequestErrorSerializer(serializers.Serializer):
    kind = serializers.CharField()
    message = serializers.CharField()
    status_code = serializers.IntegerField(required=False)
    data = serializers.JSONField(required=False)
    last_error = serializers.JSONField(required=False)


class AsyncRequestStatusSerializer(serializers.Serializer):
    request_id = serializers.CharField()
    status = serializers.CharField()
    attempt = serializers.IntegerField()
    result = serializers.JSONField(allow_null=True)
    error = AsyncRequestErrorSerializer(allow_null=True)
