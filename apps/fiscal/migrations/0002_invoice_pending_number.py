# Generated migration for AFIP electronic invoicing

from django.db import migrations, models


class Migration(migrations.Migration):
    """Remember the number of an unconfirmed FECAESolicitar."""

    dependencies = [
        ("fiscal", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="invoice",
            name="pending_number",
            field=models.PositiveIntegerField(
                default=0,
                help_text="Number sent in an unconfirmed FECAESolicitar; looked up before resubmitting",
            ),
        ),
    ]
