import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Marathon",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=200)),
                ("description", models.TextField(blank=True, max_length=1000)),
                ("start_date", models.DateTimeField()),
                ("end_date", models.DateTimeField()),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={
                "ordering": ["start_date"],
            },
        ),
        migrations.CreateModel(
            name="MarathonParticipant",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("joined_at", models.DateTimeField(auto_now_add=True)),
                ("status", models.CharField(choices=[("active", "Active"), ("disqualified", "Disqualified"), ("completed", "Completed")], default="active", max_length=20)),
                ("marathon", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="participants", to="marathon.marathon")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="marathons", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "unique_together": {("marathon", "user")},
            },
        ),
    ]
