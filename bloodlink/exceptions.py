"""
Service-layer exceptions and the DRF exception handler.

Services raise these directly; because they are APIExceptions, DRF turns them
into responses, and the handler below gives every error the same envelope.
"""
import logging
import time
import uuid

from django.core.exceptions import PermissionDenied as DjangoPermissionDenied
from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import APIException, PermissionDenied
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class ServiceError(APIException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = 'Internal server error.'
    default_code = 'internal_server_error'


class ValidationFailed(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Invalid input.'
    default_code = 'validation_error'


class ResourceNotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Resource not found.'
    default_code = 'resource_not_found'


class ResourceConflict(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Resource already exists.'
    default_code = 'resource_conflict'


class BusinessRuleViolation(ServiceError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = 'Business rule violated.'
    default_code = 'business_rule_violation'


class InsufficientStock(ResourceConflict):
    default_detail = 'Not enough blood units in stock.'
    default_code = 'insufficient_stock'


def generate_correlation_id():
    return f"err-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def _error_message(detail):
    if isinstance(detail, dict):
        if 'detail' in detail:
            return str(detail['detail'])
        return 'Invalid input.'
    if isinstance(detail, list):
        return str(detail[0]) if detail else 'Invalid input.'
    return str(detail)


def api_exception_handler(exc, context):
    """
    Wrap DRF's default handler so every error body looks like
    {"error", "code", "details", "correlation_id"}.
    """
    if isinstance(exc, Http404):
        exc = ResourceNotFound()
    elif isinstance(exc, DjangoPermissionDenied):
        exc = PermissionDenied()

    response = exception_handler(exc, context)
    correlation_id = generate_correlation_id()
    view = context.get('view')
    view_name = view.__class__.__name__ if view else 'unknown'

    if response is None:
        logger.error(
            "Unhandled error in %s [%s]", view_name, correlation_id, exc_info=exc,
        )
        return Response(
            {
                'error': 'Internal server error.',
                'code': ServiceError.default_code,
                'details': None,
                'correlation_id': correlation_id,
            },
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    code = getattr(exc, 'default_code', 'error')
    if hasattr(exc, 'get_codes'):
        codes = exc.get_codes()
        if isinstance(codes, str):
            code = codes

    detail = response.data
    details = detail if isinstance(detail, (dict, list)) and not (
        isinstance(detail, dict) and set(detail) == {'detail'}
    ) else None

    if response.status_code >= 500:
        logger.error("%s in %s [%s]: %s", type(exc).__name__, view_name, correlation_id, exc, exc_info=exc)
    else:
        logger.warning("%s in %s [%s]: %s", type(exc).__name__, view_name, correlation_id, _error_message(detail))

    response.data = {
        'error': _error_message(detail),
        'code': code,
        'details': details,
        'correlation_id': correlation_id,
    }
    return response
