from django.apps import AppConfig
from django.conf import settings


class RaffleConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.raffle'
    verbose_name = 'Raffle'

    def ready(self):
        """
        Create the real-time transport once per process and hand it to the
        notifier; views reach both through this config
        """
        from .broadcast import InMemoryBroadcaster
        from .notifications import SquareNotifier

        self.broadcaster = InMemoryBroadcaster(
            max_queue_size=settings.RAFFLE_SSE_QUEUE_SIZE
        )
        self.notifier = SquareNotifier(self.broadcaster)

    def allocation_service(self):
        from .services import AllocationService
        return AllocationService(notifier=self.notifier)
