"""HTTP client for the push notification gateway."""
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from matching.errors import NotificationError
from matching.models import DispatchResult

logger = logging.getLogger(__name__)

NOTIFICATION_NEW_MATCHES = 'new_matches'
NOTIFICATION_FRIEND_REQUEST = 'friend_request'
NOTIFICATION_FRIEND_ACCEPTED = 'friend_accepted'
NOTIFICATION_TEST = 'test'


class PushDispatcher:
    """Sends push notifications through an HTTP gateway."""

    ICON = '/icon-192x192.png'

    def __init__(self, gateway_url: str, api_key: Optional[str] = None,
                 timeout: int = 10, max_retries: int = 3):
        """
        Initialize the dispatcher.

        Args:
            gateway_url: Endpoint accepting notification requests
            api_key: Optional bearer token for the gateway
            timeout: HTTP request timeout in seconds
            max_retries: Attempts before giving up
        """
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries

    def dispatch(self, user_ids: List[str], notification_type: str,
                 payload: Optional[Dict[str, Any]] = None) -> DispatchResult:
        """
        Send one notification type to a list of users.

        Args:
            user_ids: Recipients
            notification_type: Kind of notification (e.g. 'new_matches')
            payload: Extra data delivered with the notification

        Returns:
            DispatchResult with sent/failed counts

        Raises:
            NotificationError: If no recipients are given or all attempts fail
        """
        if not user_ids:
            raise NotificationError("user_ids list is required")

        body = {
            'user_ids': list(user_ids),
            'notification': self.build_notification(notification_type, payload or {})
        }

        logger.info(
            f"Dispatching '{notification_type}' notification to {len(user_ids)} users"
        )
        data = self._post_with_retry(body)

        result = DispatchResult(
            sent=int(data.get('sent', 0)),
            failed=int(data.get('failed', 0)),
            failed_user_ids=list(data.get('failed_user_ids', []))
        )
        logger.info(
            f"Push notifications sent: {result.sent} success, {result.failed} failed"
        )
        return result

    def build_notification(self, notification_type: str,
                           payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Build the notification content for a type.

        Args:
            notification_type: Kind of notification
            payload: Extra data merged into the notification data

        Returns:
            Notification dict with title, body, tag and data
        """
        notification = {
            'icon': self.ICON,
            'badge': self.ICON,
            'tag': notification_type,
            'data': {'url': '/', **payload}
        }

        if notification_type == NOTIFICATION_NEW_MATCHES:
            notification.update(
                title='New match!',
                body='Someone is free at the same time as you. Take a look!',
                tag='new-matches'
            )
        elif notification_type == NOTIFICATION_FRIEND_REQUEST:
            notification.update(
                title='New friend request',
                body='You received a new friend request.',
                tag='friend-request',
                data={'url': '/?tab=friends', **payload}
            )
        elif notification_type == NOTIFICATION_FRIEND_ACCEPTED:
            notification.update(
                title='Friend request accepted',
                body='You are now friends!',
                tag='friend-accepted',
                data={'url': '/?tab=friends', **payload}
            )
        elif notification_type == NOTIFICATION_TEST:
            notification.update(
                title='Test notification',
                body=payload.get('message') or 'Push notifications are working!',
                tag='test-notification'
            )
        else:
            notification.update(
                title='Free window',
                body=payload.get('message') or 'You have a new notification.'
            )

        return notification

    def _post_with_retry(self, body: Dict[str, Any]) -> Dict[str, Any]:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"

        base_delay = 1  # seconds

        for attempt in range(self.max_retries):
            try:
                response = requests.post(
                    self.gateway_url,
                    json=body,
                    headers=headers,
                    timeout=self.timeout
                )
                response.raise_for_status()
                return response.json()

            except (requests.RequestException, ValueError) as e:
                if attempt < self.max_retries - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        f"Push request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} push attempts failed. Last error: {e}"
                    )
                    raise NotificationError(f"Push gateway unavailable: {e}") from e
