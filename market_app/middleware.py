"""
Request Timing Middleware
Logs the time taken for each API request.
"""

import logging
import time
from django.utils.deprecation import MiddlewareMixin

logger = logging.getLogger(__name__)

# Requests slower than this are logged at WARNING
SLOW_REQUEST_MS = 500


class RequestTimingMiddleware(MiddlewareMixin):
    """
    Middleware that logs request timing information for /api/ requests.

    Output format:
    METHOD /path XXX.XXms STATUS ACTION

    ACTION is POLL for chat polling reads, SEND for writes and LOAD for other reads.
    """

    def process_request(self, request):
        """Store the start time when request begins."""
        request._start_time = time.monotonic()

    def process_response(self, request, response):
        """Calculate and log the request duration."""
        if not hasattr(request, '_start_time'):
            return response

        path = request.path
        if not path.startswith('/api/'):
            return response

        duration_ms = (time.monotonic() - request._start_time) * 1000
        method = request.method
        status = response.status_code

        if method != 'GET':
            action = 'SEND'
        elif path.startswith('/api/messages/') or path.startswith('/api/conversations/'):
            action = 'POLL'
        else:
            action = 'LOAD'

        # Format duration
        if duration_ms < 100:
            duration_str = f'{duration_ms:6.2f}ms'
        else:
            duration_str = f'{duration_ms:6.1f}ms'

        level = logging.WARNING if duration_ms >= SLOW_REQUEST_MS or status >= 500 else logging.INFO
        logger.log(level, f'{method:6s} {path:45s} {duration_str} {status} {action}')

        return response
