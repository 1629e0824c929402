import logging
from datetime import datetime
from marketplace_billing.core.firebase import get_firestore_client

logger = logging.getLogger(__name__)


class AnalyticsService:
    """Billing analytics and notification sink backed by Firestore.

    Nothing written here is ever allowed to break the billing flow: every
    write is attempted once and failures are only logged.
    """

    def __init__(self):
        self.db = get_firestore_client()
        self.events_collection = 'billing_events'
        self.errors_collection = 'billing_errors'
        self.notifications_collection = 'billing_notifications'
        self.logger = logging.getLogger(__name__)

    def _write(self, collection: str, document: dict, label: str):
        try:
            self.db.collection(collection).add(document)
            logger.info(f"{label}: Success")
        except Exception as e:
            logger.error(f"{label}: Failure - {e}")

    def log_event(self, event_name: str, account_id: str = None, parameters: dict = None):
        logger.info(f"log_event: Entry - {event_name}, account: {account_id}")
        self._write(self.events_collection, {
            'event_name': event_name,
            'account_id': account_id,
            'parameters': parameters or {},
            'timestamp': datetime.utcnow()
        }, f"log_event {event_name}")

    def log_success(self, action: str, account_id: str = None, parameters: dict = None):
        self.log_event(
            event_name=f'{action}_success',
            account_id=account_id,
            parameters={'status': 'success', **(parameters or {})}
        )

    def log_failure(self, action: str, error: str, account_id: str = None, parameters: dict = None):
        """
        Record a failed action twice: as an analytics event for failure rates
        and as an error document for debugging.
        """
        self.log_event(
            event_name=f'{action}_failure',
            account_id=account_id,
            parameters={'status': 'failure', 'error': error, **(parameters or {})}
        )
        self._write(self.errors_collection, {
            'action': action,
            'account_id': account_id,
            'error_message': error,
            'parameters': parameters or {},
            'timestamp': datetime.utcnow()
        }, f"log_failure {action}")

    def notify(self, signal: str, account_id: str, parameters: dict = None):
        """
        Publish a boolean signal for the notification dispatcher
        (e.g. plan_change_cooldown_bypassed). Delivery is not our concern.
        """
        logger.info(f"notify: Entry - {signal}, account: {account_id}")
        self._write(self.notifications_collection, {
            'signal': signal,
            'account_id': account_id,
            'parameters': parameters or {},
            'timestamp': datetime.utcnow()
        }, f"notify {signal}")
