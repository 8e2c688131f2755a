from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("payments", "0002_add_celery_beat_schedules"),
    ]

    operations = [
        migrations.AddField(
            model_name="fleetsubscription",
            name="billing_anchor_day",
            field=models.PositiveSmallIntegerField(blank=True, help_text="Day of month renewals fall on (the subscription's start day)", null=True),
        ),
    ]
