# Generated manually

from django.db import migrations, models
import django.db.models.deletion
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('raffle', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='PaymentCredit',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('customer_name', models.CharField(max_length=255)),
                ('customer_email', models.EmailField(blank=True, max_length=255, null=True)),
                ('customer_phone', models.CharField(blank=True, max_length=30, null=True)),
                ('payment_reference', models.CharField(help_text='Opaque id of the payment in the external system', max_length=255, unique=True)),
                ('payment_method', models.CharField(choices=[('CASH', 'Cash'), ('CARD', 'Card'), ('GATEWAY', 'Payment gateway')], max_length=10)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=10)),
                ('status', models.CharField(choices=[('PENDING', 'Pending'), ('CONFIRMED', 'Confirmed'), ('USED', 'Used'), ('EXPIRED', 'Expired'), ('REFUNDED', 'Refunded')], db_index=True, default='PENDING', max_length=20)),
                ('expires_at', models.DateTimeField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('event', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='credits', to='raffle.event')),
            ],
            options={
                'verbose_name': 'Payment credit',
                'verbose_name_plural': 'Payment credits',
                'db_table': 'payment_credits',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['event', 'created_at'], name='payment_credit_event_idx'),
                    models.Index(fields=['status', 'expires_at'], name='payment_credit_expiry_idx'),
                ],
            },
        ),
    ]
