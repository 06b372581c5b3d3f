from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("billing", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="payment",
            name="mode",
            field=models.CharField(
                choices=[("cart", "Cart"), ("whole_bill", "Whole bill"), ("split_part", "Split part")],
                default="whole_bill",
                max_length=16,
            ),
            preserve_default=False,
        ),
    ]
