# Generated manually

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    dependencies = [
        ('payments', '0001_initial'),
        ('raffle', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='SquarePurchase',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('confirmation_code', models.CharField(db_index=True, max_length=12, unique=True)),
                ('customer_initials', models.CharField(max_length=3)),
                ('customer_full_name', models.CharField(max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('credit', models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name='purchase', to='payments.paymentcredit')),
                ('square', models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name='purchase', to='raffle.square')),
            ],
            options={
                'verbose_name': 'Square purchase',
                'verbose_name_plural': 'Square purchases',
                'db_table': 'raffle_square_purchases',
                'ordering': ['-created_at'],
            },
        ),
    ]
