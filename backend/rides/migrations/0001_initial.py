import uuid
from decimal import Decimal

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('drivers', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='RideRequest',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('pickup_latitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('pickup_longitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('pickup_address', models.TextField(blank=True, default='')),
                ('dropoff_latitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('dropoff_longitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('dropoff_address', models.TextField(blank=True, default='')),
                ('ride_option', models.CharField(choices=[('viaje', 'Viaje'), ('confort', 'Confort'), ('moto', 'Moto'), ('entregas', 'Entregas'), ('flete', 'Flete')], default='viaje', max_length=20)),
                ('ride_option_multiplier', models.DecimalField(decimal_places=2, default=Decimal('1.00'), max_digits=4)),
                ('suggested_fare', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=10)),
                ('final_fare', models.DecimalField(decimal_places=2, max_digits=10)),
                ('distance_km', models.FloatField(default=0)),
                ('travel_time_minutes', models.PositiveIntegerField(default=0)),
                ('charity', models.CharField(blank=True, choices=[('animal_rescue', 'Animal Rescue League'), ('childrens_fund', "Children's Education Fund"), ('rainforest_trust', 'Rainforest Trust')], default='', max_length=30)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('accepted', 'Accepted'), ('in_progress', 'In Progress'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], db_index=True, default='pending', max_length=20)),
                ('client_request_id', models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('accepted_at', models.DateTimeField(blank=True, null=True)),
                ('started_at', models.DateTimeField(blank=True, null=True)),
                ('trip_completed_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('cancelled_by', models.CharField(blank=True, default='', max_length=10)),
                ('cancellation_reason', models.TextField(blank=True, default='')),
                ('driver', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='rides', to='drivers.driverprofile')),
            ],
            options={
                'db_table': 'ride_requests',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='ChatMessage',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('sender', models.CharField(choices=[('rider', 'Rider'), ('driver', 'Driver')], max_length=10)),
                ('text', models.TextField(max_length=1000)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('ride', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='chat_messages', to='rides.riderequest')),
            ],
            options={
                'db_table': 'ride_chat_messages',
                'ordering': ['id'],
            },
        ),
        migrations.CreateModel(
            name='CallSession',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('call_id', models.UUIDField(default=uuid.uuid4)),
                ('status', models.CharField(choices=[('none', 'None'), ('ringing', 'Ringing'), ('active', 'Active'), ('ended', 'Ended')], default='none', max_length=10)),
                ('call_type', models.CharField(choices=[('voice', 'Voice'), ('video', 'Video')], default='voice', max_length=10)),
                ('caller', models.CharField(blank=True, default='', max_length=10)),
                ('started_at', models.DateTimeField(blank=True, null=True)),
                ('answered_at', models.DateTimeField(blank=True, null=True)),
                ('ended_at', models.DateTimeField(blank=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('ride', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='call_session', to='rides.riderequest')),
            ],
            options={
                'db_table': 'ride_call_sessions',
            },
        ),
    ]
