import logging

from rest_framework.response import Response

from orders.services.exceptions import BusinessError

logger = logging.getLogger(__name__)


def error_response(exc: BusinessError) -> Response:
    """Translate a BusinessError into a JSON error; details stay in the log."""
    logger.info("Request rejected (%s): %s", exc.__class__.__name__, exc.message)
    return Response(
        {"error": exc.message, "code": exc.__class__.__name__},
        status=getattr(exc, "http_status", 400),
    )
