# Generated manually

from django.conf import settings
import django.core.serializers.json
from django.db import migrations, models
import django.db.models.deletion
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Event',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(max_length=255)),
                ('description', models.TextField(blank=True, default='')),
                ('status', models.CharField(choices=[('DRAFT', 'Draft'), ('SELLING', 'Selling'), ('SOLD_OUT', 'Sold out'), ('LIVE', 'Live'), ('COMPLETED', 'Completed'), ('CANCELLED', 'Cancelled')], db_index=True, default='DRAFT', help_text='Lifecycle state; only SELLING events accept credits and selections', max_length=20)),
                ('square_price', models.DecimalField(decimal_places=2, max_digits=10)),
                ('grid_cols', models.PositiveIntegerField()),
                ('grid_rows', models.PositiveIntegerField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Event',
                'verbose_name_plural': 'Events',
                'db_table': 'raffle_events',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['-created_at'], name='raffle_event_created_idx')],
            },
        ),
        migrations.CreateModel(
            name='Square',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('grid_x', models.PositiveIntegerField(help_text='0-based column')),
                ('grid_y', models.PositiveIntegerField(help_text='0-based row')),
                ('square_number', models.PositiveIntegerField(help_text='1-based, row-major')),
                ('position', models.CharField(help_text='Column letters + row number, e.g. C7', max_length=10)),
                ('status', models.CharField(choices=[('AVAILABLE', 'Available'), ('TAKEN', 'Taken'), ('RESERVED', 'Reserved')], db_index=True, default='AVAILABLE', max_length=20)),
                ('owner_id', models.CharField(blank=True, max_length=255, null=True)),
                ('selected_at', models.DateTimeField(blank=True, null=True)),
                ('event', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='squares', to='raffle.event')),
            ],
            options={
                'verbose_name': 'Square',
                'verbose_name_plural': 'Squares',
                'db_table': 'raffle_squares',
                'ordering': ['event', 'square_number'],
                'indexes': [models.Index(fields=['event', 'status'], name='raffle_square_status_idx')],
                'constraints': [
                    models.UniqueConstraint(fields=('event', 'grid_x', 'grid_y'), name='uniq_square_cell'),
                    models.UniqueConstraint(fields=('event', 'square_number'), name='uniq_square_number'),
                ],
            },
        ),
        migrations.AddField(
            model_name='event',
            name='winner_square',
            field=models.ForeignKey(blank=True, help_text='Winning square, set when the event is completed', null=True, on_delete=django.db.models.deletion.PROTECT, related_name='+', to='raffle.square'),
        ),
        migrations.CreateModel(
            name='TimelineEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('entry_type', models.CharField(choices=[('EVENT_CREATED', 'Event created'), ('STATUS_CHANGED', 'Status changed'), ('CREDIT_CREATED', 'Credit created'), ('CREDIT_REFUNDED', 'Credit refunded'), ('SQUARE_ALLOCATED', 'Square allocated'), ('EVENT_COMPLETED', 'Event completed')], max_length=30)),
                ('details', models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('actor', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('event', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='timeline', to='raffle.event')),
            ],
            options={
                'verbose_name': 'Timeline entry',
                'verbose_name_plural': 'Timeline entries',
                'db_table': 'raffle_timeline',
                'ordering': ['-created_at', '-id'],
                'indexes': [models.Index(fields=['event', 'created_at'], name='raffle_timeline_event_idx')],
            },
        ),
    ]
