from django.db import migrations, models
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Trip',
            fields=[
                ('trip_id', models.CharField(help_text='Opaque trip id, also used in share links', max_length=100, primary_key=True, serialize=False)),
                ('status', models.CharField(choices=[('started', 'Started'), ('en_route', 'En route'), ('arrived', 'Arrived'), ('stopped', 'Stopped')], default='started', max_length=16)),
                ('timestamp', models.DateTimeField(default=django.utils.timezone.now, help_text='Time of the last write')),
                ('destination', models.JSONField(help_text='{lat, lng, address}; fixed at creation')),
                ('current_location', models.JSONField(blank=True, help_text='{lat, lng, accuracy?}', null=True)),
                ('route', models.JSONField(blank=True, help_text='Baseline and progress: distances in meters, durations in seconds', null=True)),
                ('speed', models.FloatField(blank=True, null=True)),
                ('heading', models.FloatField(blank=True, null=True)),
                ('user_info', models.JSONField(blank=True, null=True)),
                ('stopped_at', models.DateTimeField(blank=True, null=True)),
                ('expires_at', models.DateTimeField(blank=True, db_index=True, help_text='Row is deleted by the reaper once this has passed', null=True)),
                ('date_added', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'verbose_name': 'Trip',
                'verbose_name_plural': 'Trips',
                'ordering': ['-date_added'],
            },
        ),
    ]
