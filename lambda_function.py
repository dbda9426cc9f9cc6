"""AWS Lambda handler for free-window match computation."""
import json
import logging
import os
import time
from typing import Any, Dict, Optional

from matching.errors import InputError, MatchingError
from matching.match_resolver import MatchResolver
from notifications.deduplicator import NotificationDeduplicator
from notifications.push_dispatcher import PushDispatcher
from storage.dynamodb_store import DynamoDBStore

ACTION_COMPUTE = 'compute_matches'
ACTION_GET = 'get_matches'
ACTION_REBUILD = 'rebuild_matches'
ACTION_SWEEP = 'sweep_expired'

# Attributes every LogRecord has; anything else came in through extra=
_RESERVED_LOG_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including extra fields."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RESERVED_LOG_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def load_config() -> Dict[str, Any]:
    """Read configuration from environment variables."""
    return {
        'events_table': os.environ.get('EVENTS_TABLE', 'free4-events'),
        'friendships_table': os.environ.get('FRIENDSHIPS_TABLE', 'free4-friendships'),
        'matches_table': os.environ.get('MATCHES_TABLE', 'free4-matches'),
        'notifications_table': os.environ.get('NOTIFICATIONS_TABLE', 'free4-notifications-sent'),
        'region_name': os.environ.get('AWS_REGION'),
        'push_gateway_url': os.environ.get('PUSH_GATEWAY_URL', ''),
        'push_api_key': os.environ.get('PUSH_API_KEY'),
        'log_level': os.environ.get('LOG_LEVEL', 'INFO'),
        'timeout_seconds': int(os.environ.get('TIMEOUT_SECONDS', '10')),
        'run_timeout_seconds': float(os.environ.get('RUN_TIMEOUT_SECONDS', '25')),
        'min_overlap_minutes': int(os.environ.get('MIN_OVERLAP_MINUTES', '30'))
    }


def build_resolver(config: Dict[str, Any]) -> MatchResolver:
    """Wire the store, dispatcher and resolver together."""
    store = DynamoDBStore(
        events_table=config['events_table'],
        friendships_table=config['friendships_table'],
        matches_table=config['matches_table'],
        notifications_table=config['notifications_table'],
        region_name=config['region_name']
    )

    deduplicator = None
    if config['push_gateway_url']:
        dispatcher = PushDispatcher(
            gateway_url=config['push_gateway_url'],
            api_key=config['push_api_key'],
            timeout=config['timeout_seconds']
        )
        deduplicator = NotificationDeduplicator(store, dispatcher)

    return MatchResolver(
        store,
        deduplicator=deduplicator,
        min_overlap_minutes=config['min_overlap_minutes']
    )


def resolve_user_id(event: Dict[str, Any]) -> Optional[str]:
    """
    Take the caller's user id from the authorizer claims, or the payload.

    The identity provider has already authenticated the caller.
    """
    request_context = event.get('requestContext') or {}
    authorizer = request_context.get('authorizer') or {}
    claims = authorizer.get('claims') or {}
    return claims.get('sub') or event.get('user_id')


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {'statusCode': status_code, 'body': json.dumps(body)}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler for match computation.

    Args:
        event: Invocation payload with 'action' and the caller identity
        context: Lambda context object

    Returns:
        Response dict with statusCode and a JSON body
    """
    config = load_config()

    setup_logging(config['log_level'])
    logger = logging.getLogger(__name__)

    start_time = time.time()
    action = event.get('action', ACTION_COMPUTE)
    logger.info(
        "Lambda execution started",
        extra={'action': action, 'matches_table': config['matches_table']}
    )

    try:
        resolver = build_resolver(config)

        if action == ACTION_COMPUTE:
            deadline = time.monotonic() + config['run_timeout_seconds']
            result = resolver.compute_matches(resolve_user_id(event), deadline=deadline)
            body = {
                'matches': [m.to_dict() for m in result.matches],
                'message': result.message
            }
        elif action == ACTION_GET:
            matches = resolver.get_active_matches(resolve_user_id(event))
            body = {'matches': [m.to_dict() for m in matches]}
        elif action == ACTION_REBUILD:
            stats = resolver.rebuild_all_matches()
            body = {
                'message': 'Match rebuild completed successfully',
                'stats': stats.to_dict()
            }
        elif action == ACTION_SWEEP:
            deleted = resolver.sweep_expired()
            body = {'message': 'Expired events swept', 'events_deleted': deleted}
        else:
            raise InputError(f"Unknown action '{action}'")

    except InputError as e:
        logger.warning(f"Rejected request: {e}", extra={'action': action})
        return _response(400, {'error': str(e), 'error_type': type(e).__name__})

    except MatchingError as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {e}",
            extra={
                'action': action,
                'error_type': type(e).__name__,
                'duration_seconds': round(duration, 2)
            },
            exc_info=True
        )
        status_code = 503 if e.retryable else 500
        return _response(status_code, {
            'error': str(e),
            'error_type': type(e).__name__,
            'retryable': e.retryable,
            'duration_seconds': round(duration, 2)
        })

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'action': action,
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {
            'message': 'Internal server error',
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })

    duration = time.time() - start_time
    body['duration_seconds'] = round(duration, 2)
    logger.info(
        "Lambda execution completed successfully",
        extra={'action': action, 'duration_seconds': round(duration, 2)}
    )
    return _response(200, body)
