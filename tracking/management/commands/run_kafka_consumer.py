"""
Management command that fans trip change events from Kafka out to observers.

Run one per deployment alongside the ASGI server when KAFKA_ENABLED is set.
Without it, producers fall back to broadcasting on the channel layer directly.
"""

import asyncio
import signal

from django.conf import settings
from django.core.management.base import BaseCommand

from tracking.kafka_client import start_kafka_consumer, stop_kafka_consumer


class Command(BaseCommand):
    help = 'Consume the trip change topic and broadcast each change to its trip group'

    def add_arguments(self, parser):
        parser.add_argument('--topic', default=None, help='Topic to consume (default: KAFKA_TRIP_TOPIC)')
        parser.add_argument(
            '--bootstrap-servers',
            default=None,
            help='Kafka servers (default: KAFKA_BOOTSTRAP_SERVERS)'
        )

    def handle(self, *args, **options):
        if not settings.KAFKA_ENABLED:
            self.stdout.write(self.style.WARNING(
                'KAFKA_ENABLED is off: producers broadcast directly and nothing will be published'
            ))

        topic = options['topic'] or settings.KAFKA_TRIP_TOPIC
        self.stdout.write(self.style.SUCCESS(f'Consuming trip changes from {topic}...'))
        asyncio.run(self._run(topic, options['bootstrap_servers']))
        self.stdout.write(self.style.SUCCESS('Kafka consumer stopped'))

    async def _run(self, topic, bootstrap_servers):
        loop = asyncio.get_running_loop()
        consumer = asyncio.ensure_future(start_kafka_consumer(topic, bootstrap_servers))

        stop_requested = asyncio.Event()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_requested.set)

        stopper = asyncio.ensure_future(stop_requested.wait())
        await asyncio.wait({consumer, stopper}, return_when=asyncio.FIRST_COMPLETED)

        if stop_requested.is_set():
            self.stdout.write(self.style.WARNING('Shutting down...'))
        stopper.cancel()
        await stop_kafka_consumer()
        await asyncio.gather(consumer, return_exceptions=True)
