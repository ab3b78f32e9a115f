from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.payments'
    verbose_name = 'Payments'

    def ready(self):
        """
        Start the credit expiry sweep when enabled
        """
        from django.conf import settings

        if getattr(settings, 'ENABLE_CREDIT_EXPIRY_SCHEDULER', False):
            try:
                from .scheduler import start_scheduler
                start_scheduler()
            except Exception as e:
                # Expiry is also checked on every read and allocation,
                # the sweep only keeps reports current.
                import logging
                logger = logging.getLogger(__name__)
                logger.error(f"Failed to start credit expiry scheduler: {str(e)}")
