"""
GraphQL view with idempotency and logging support.
"""
import hashlib
import json
import logging
from uuid import uuid4

from ariadne import graphql_sync
from django.db import IntegrityError, transaction
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from marketplace.api.middleware import ErrorHandler
from marketplace.api.schema import schema
from marketplace.infra.models import IdempotencyKey
from marketplace.infra.pii_masker import mask_pii_in_dict

logger = logging.getLogger(__name__)

OPERATIONS = {
    "confirmPayment": "CONFIRM_PAYMENT",
    "setFulfillmentStatus": "SET_FULFILLMENT_STATUS",
    "addOrderNote": "ADD_NOTE",
}


class MarketplaceGraphQLView:
    """GraphQL view with idempotency and structured logging."""

    def dispatch(self, request, *args, **kwargs):
        """Handle GraphQL request with idempotency."""
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        idempotency_key = request.headers.get("Idempotency-Key")
        user_id = request.headers.get("X-User-ID")

        # Log request (with PII masking)
        log_data = {
            "request_id": request_id,
            "user_id": user_id,
            "idempotency_key": idempotency_key[:8] + "..." if idempotency_key else None,
            "operation": "graphql",
        }
        logger.info("graphql_request", extra=mask_pii_in_dict(log_data))

        if request.method == "GET":
            return JsonResponse({"message": "GraphQL endpoint. Use POST for queries."})

        try:
            data = json.loads(request.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JsonResponse({"error": {"code": "VALIDATION_ERROR", "message": "Invalid JSON"}}, status=400)
        if not isinstance(data, dict):
            return JsonResponse({"error": {"code": "VALIDATION_ERROR", "message": "Invalid JSON"}}, status=400)

        query = data.get("query") or ""
        operation = self._extract_operation(query)

        if idempotency_key and user_id and operation:
            response = self._dispatch_idempotent(request, data, request_id, user_id, idempotency_key, operation)
        else:
            response = self._execute(request, data, request_id, user_id)

        logger.info(
            "graphql_response",
            extra={
                "request_id": request_id,
                "operation": operation or "query",
                "status": response.status_code,
            }
        )
        return response

    def _dispatch_idempotent(self, request, data, request_id, user_id, idempotency_key, operation):
        request_hash = self._create_request_hash(data.get("query", ""), data.get("variables") or {})

        existing = IdempotencyKey.objects.filter(
            key=idempotency_key,
            user_id=user_id,
            operation=operation,
        ).first()

        if existing:
            if existing.request_hash == request_hash:
                logger.info(
                    "idempotent_request_cached",
                    extra={
                        "request_id": request_id,
                        "idempotency_key": idempotency_key,
                        "operation": operation,
                    }
                )
                return JsonResponse(existing.response_payload, safe=False)

            # Different request with same key - conflict
            logger.warning(
                "idempotency_key_conflict",
                extra={
                    "request_id": request_id,
                    "idempotency_key": idempotency_key,
                    "operation": operation,
                }
            )
            return JsonResponse(
                {
                    "error": {
                        "code": "DUPLICATE_REQUEST",
                        "message": "Idempotency key already used with different request",
                    }
                },
                status=ErrorHandler.status_for("DUPLICATE_REQUEST"),
            )

        response = self._execute(request, data, request_id, user_id)

        if response.status_code == 200:
            try:
                with transaction.atomic():
                    IdempotencyKey.objects.create(
                        key=idempotency_key,
                        user_id=user_id,
                        operation=operation,
                        request_hash=request_hash,
                        response_payload=json.loads(response.content),
                    )
            except IntegrityError:
                # a concurrent retry stored it first
                logger.warning(
                    "idempotency_key_race",
                    extra={"request_id": request_id, "idempotency_key": idempotency_key},
                )
        return response

    def _execute(self, request, data, request_id, user_id):
        try:
            success, result = graphql_sync(
                schema,
                data,
                context_value={"request": request},
            )
        except Exception as e:
            logger.error(
                "graphql_error",
                extra={
                    "request_id": request_id,
                    "error": str(e),
                }
            )
            return ErrorHandler.handle_error(e)

        status_code = 200 if success else 400
        return JsonResponse(result, status=status_code)

    def _create_request_hash(self, query: str, variables: dict) -> str:
        """Create hash of request for deduplication."""
        content = json.dumps({"query": query, "variables": variables}, sort_keys=True, default=str)
        return hashlib.sha256(content.encode()).hexdigest()

    def _extract_operation(self, query: str) -> str | None:
        """Mutation name used as the idempotency scope, None for queries."""
        if "mutation" not in query:
            return None
        for field_name, operation in OPERATIONS.items():
            if field_name in query:
                return operation
        return None


@csrf_exempt
@require_http_methods(["GET", "POST"])
def graphql_view(request):
    """GraphQL endpoint."""
    view = MarketplaceGraphQLView()
    return view.dispatch(request)
