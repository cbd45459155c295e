from django.db import migrations

PROJECT_CODE_COUNTER_KEY = "project_code"


def seed_counter(apps, schema_editor):
    ProjectCodeCounter = apps.get_model("projects", "ProjectCodeCounter")
    ProjectCodeCounter.objects.get_or_create(key=PROJECT_CODE_COUNTER_KEY, defaults={"value": 0})


class Migration(migrations.Migration):

    dependencies = [
        ("projects", "0001_initial"),
    ]

    operations = [
        migrations.RunPython(seed_counter, migrations.RunPython.noop),
    ]
