from __future__ import annotations

from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("asyncrequests", "0001_initial"),
    ]

    operations = [
        migrations.AddIndex(
            model_name="asyncrequestrow",
            index=models.Index(fields=["status", "updated_at"], name="async_request_stall_idx"),
        ),
    ]
