"""
GraphQL schema definition using Ariadne.
"""
from datetime import datetime
from pathlib import Path
from uuid import UUID

from ariadne import (
    MutationType,
    QueryType,
    ScalarType,
    load_schema_from_path,
    make_executable_schema,
)
from graphql.utilities import value_from_ast_untyped

from marketplace.api.middleware import ValidationError, error_payload
from marketplace.domain.errors import Forbidden
from marketplace.domain.fulfillment import FulfillmentLine, ShippingInfo
from marketplace.domain.order import MerchLine, OrderHeader, TicketLine, line_key, line_type
from marketplace.domain.timeline import Note, TimelineEvent
from marketplace.domain.types import (
    DEFAULT_CURRENCY,
    AdmitType,
    FulfillmentStatus,
    LedgerSource,
    PaymentProvider,
    PayoutScheduleType,
    ShippingMethod,
    user_actor,
)
from marketplace.domain.visibility import OrderView, ViewerContext
from marketplace.domain.wallet import WalletLedgerEntry, WalletSummary
from marketplace.infra.pii_masker import mask_account_number
from marketplace.services.fulfillment import FulfillmentService
from marketplace.services.orders import (
    OrderQueryService,
    PaymentConfirmation,
    PaymentConfirmationService,
    VendorCredit,
)
from marketplace.services.payouts import PayoutService
from marketplace.services.wallet import WalletLedgerService

# Load schema from .graphql files
SCHEMAS_DIR = Path(__file__).parent / "schemas"
type_defs = "\n".join([
    load_schema_from_path(SCHEMAS_DIR / "common.graphql"),
    load_schema_from_path(SCHEMAS_DIR / "query.graphql"),
    load_schema_from_path(SCHEMAS_DIR / "mutation.graphql"),
])

query = QueryType()
mutation = MutationType()


def _enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value!r}")


def _requester(info) -> str:
    user_id = info.context["request"].headers.get("X-User-ID")
    if not user_id:
        raise Forbidden("Sign in to continue.")
    return user_id


def _viewer(data: dict) -> ViewerContext:
    return ViewerContext(
        viewer_id=data["viewerId"],
        event_roles={
            grant["eventId"]: frozenset(grant["roles"])
            for grant in data.get("eventRoles") or []
        },
        brand_merch_item_ids=frozenset(data.get("brandMerchItemIds") or []),
    )


# Serializers

def line_item_to_dict(item) -> dict:
    data = {
        "lineKey": line_key(item),
        "type": line_type(item).value,
        "vendorId": item.vendor_id,
        "name": item.name,
        "qty": item.qty,
        "unitPriceMinor": item.unit_price_minor,
        "subtotalMinor": item.subtotal_minor,
        "currency": item.currency,
    }
    match item:
        case TicketLine():
            data.update(
                ticketTypeId=item.ticket_type_id,
                admitType=item.admit_type.value if item.admit_type else None,
                groupSize=item.group_size,
            )
        case MerchLine():
            data.update(merchItemId=item.merch_item_id, size=item.size, color=item.color)
    return data


def fulfillment_line_to_dict(line: FulfillmentLine) -> dict:
    return {
        "lineKey": line.line_key,
        "vendorId": line.vendor_id,
        "qtyOrdered": line.qty_ordered,
        "qtyFulfilled": line.qty_fulfilled,
        "status": line.status.value,
        "shipping": line.shipping.to_dict(),
        "notes": line.notes,
        "version": line.version,
        "updatedAt": line.updated_at,
    }


def order_view_to_dict(view: OrderView) -> dict:
    return {
        "id": view.order_id,
        "eventId": view.event_id,
        "status": view.status.value,
        "visibilityReason": view.visibility_reason.value,
        "lineItems": [line_item_to_dict(item) for item in view.visible_line_items],
        "fulfillmentLines": [fulfillment_line_to_dict(line) for line in view.own_fulfillment_lines.values()],
        "vendorLineStatuses": [
            {"lineKey": key, "status": status.value}
            for key, status in view.vendor_line_statuses.items()
        ],
        "fulfillmentAggregateStatus": view.fulfillment_aggregate_status.value,
        "visibleSubtotalMinor": view.visible_subtotal_minor,
    }


def timeline_item_to_dict(item) -> dict:
    if isinstance(item, (TimelineEvent, Note)):
        return item.to_dict()
    raise TypeError(f"Unknown timeline item {item!r}")


def wallet_summary_to_dict(summary: WalletSummary) -> dict:
    payout = summary.payout
    bank = None
    if payout.bank is not None:
        bank = {
            "bankName": payout.bank.bank_name,
            "accountNumber": mask_account_number(payout.bank.account_number),
            "accountName": payout.bank.account_name,
            "bankCode": payout.bank.bank_code,
            "isVerified": payout.bank.is_verified,
        }
    return {
        "vendorId": summary.vendor_id,
        "currency": summary.currency,
        "eligibleBalanceMinor": summary.eligible_balance_minor,
        "onHoldMinor": summary.on_hold_minor,
        "payout": {
            "frequency": payout.frequency,
            "schedule": payout.schedule.value,
            "dayOfWeek": payout.day_of_week,
            "cutoffDayOfWeek": payout.cutoff_day_of_week,
            "cutoffHourLocal": payout.cutoff_hour_local,
            "payoutHourLocal": payout.payout_hour_local,
            "bank": bank,
            "nextPayoutAt": payout.next_payout_at,
            "lastPayoutAt": payout.last_payout_at,
        },
        "lastUpdatedAt": summary.last_updated_at,
    }


def ledger_entry_to_dict(entry: WalletLedgerEntry) -> dict:
    return {
        "id": entry.id,
        "type": entry.type.value,
        "amountMinor": entry.amount_minor,
        "currency": entry.currency,
        "source": entry.source.value,
        "orderRef": entry.order_ref,
        "eventId": entry.event_id,
        "targetPayoutAt": entry.target_payout_at,
        "targetPayoutKey": entry.target_payout_key,
        "payoutBatchId": entry.payout_batch_id,
        "paidAt": entry.paid_at,
        "referenceEntryId": entry.reference_entry_id,
        "note": entry.note,
        "createdAt": entry.created_at,
        "createdBy": entry.created_by,
    }


# Input parsing

def _line_item_from_input(data: dict, currency: str):
    ticket, merch = data.get("ticket"), data.get("merch")
    if bool(ticket) == bool(merch):
        raise ValidationError("Each line item needs exactly one of ticket or merch")
    if ticket:
        return TicketLine(
            ticket_type_id=ticket["ticketTypeId"],
            vendor_id=ticket["vendorId"],
            qty=ticket["qty"],
            unit_price_minor=ticket["unitPriceMinor"],
            name=ticket.get("name") or "",
            currency=currency,
            admit_type=_enum(AdmitType, ticket["admitType"], "admitType") if ticket.get("admitType") else None,
            group_size=ticket.get("groupSize"),
        )
    return MerchLine(
        merch_item_id=merch["merchItemId"],
        vendor_id=merch["vendorId"],
        qty=merch["qty"],
        unit_price_minor=merch["unitPriceMinor"],
        name=merch.get("name") or "",
        currency=currency,
        size=merch.get("size"),
        color=merch.get("color"),
    )


def _confirmation_from_input(data: dict) -> PaymentConfirmation:
    currency = data.get("currency") or DEFAULT_CURRENCY
    provider = data.get("provider")
    header = OrderHeader(
        id=data.get("orderId"),
        event_id=data["eventId"],
        currency=currency,
        fees_minor=data.get("feesMinor") or 0,
        items_subtotal_minor=data.get("itemsSubtotalMinor"),
        total_minor=data.get("totalMinor"),
        buyer_user_id=data.get("buyerUserId"),
        deliver_to=data.get("deliverTo") or {},
        provider=_enum(PaymentProvider, provider, "provider") if provider else None,
        provider_ref=data.get("providerRef") or {},
    )
    shipping = {
        ship["lineKey"]: ShippingInfo(
            method=_enum(ShippingMethod, ship["method"], "shipping method"),
            address=ship.get("address"),
            pickup_address=ship.get("pickupAddress"),
            fee_minor=ship.get("feeMinor") or 0,
        )
        for ship in data.get("shipping") or []
    }
    credits = None
    if data.get("vendorCredits") is not None:
        credits = [
            VendorCredit(
                vendor_id=credit["vendorId"],
                amount_minor=credit["amountMinor"],
                source=_enum(LedgerSource, credit["source"], "source"),
                line_key=credit.get("lineKey"),
            )
            for credit in data["vendorCredits"]
        ]
    return PaymentConfirmation(
        header=header,
        line_items=[_line_item_from_input(item, currency) for item in data["lineItems"]],
        shipping=shipping,
        vendor_credits=credits,
        paid_at=data.get("paidAt"),
    )


# Queries

@query.field("order")
@error_payload
def resolve_order(_, info, id, viewer):
    view = OrderQueryService().get_order_view(id, _viewer(viewer))
    return {"ok": True, "order": order_view_to_dict(view)}


@query.field("eventOrders")
@error_payload
def resolve_event_orders(_, info, eventId, viewer, limit=50, offset=0):
    views = OrderQueryService().list_event_orders(eventId, _viewer(viewer), limit=limit, offset=offset)
    return {"ok": True, "orders": [order_view_to_dict(view) for view in views]}


@query.field("orderTimeline")
@error_payload
def resolve_order_timeline(_, info, orderId, newestFirst=False):
    items = OrderQueryService().timeline(orderId, newest_first=newestFirst)
    return {"ok": True, "items": [timeline_item_to_dict(item) for item in items]}


@query.field("walletSummary")
@error_payload
def resolve_wallet_summary(_, info, vendorId):
    summary = WalletLedgerService().get_summary(vendorId)
    return {"ok": True, "wallet": wallet_summary_to_dict(summary)}


@query.field("earningsBySource")
@error_payload
def resolve_earnings_by_source(_, info, vendorId):
    return {"ok": True, "earnings": WalletLedgerService().earnings_by_source(vendorId).to_dict()}


@query.field("ledgerEntries")
@error_payload
def resolve_ledger_entries(_, info, vendorId, limit=50):
    entries = WalletLedgerService().list_entries(vendorId, limit=min(max(limit, 1), 200))
    return {"ok": True, "entries": [ledger_entry_to_dict(entry) for entry in entries]}


@query.field("upcomingPayout")
@error_payload
def resolve_upcoming_payout(_, info, vendorId):
    upcoming = PayoutService().upcoming_payout(vendorId)
    return {
        "ok": True,
        "payout": {
            "vendorId": upcoming.vendor_id,
            "nextPayoutAt": upcoming.next_payout_at,
            "dueMinor": upcoming.due_minor,
            "laterMinor": upcoming.later_minor,
            "byEvent": [
                {"eventId": event_id or None, "amountMinor": amount}
                for event_id, amount in sorted(upcoming.by_event.items())
            ],
        },
    }


@query.field("payoutFee")
@error_payload
def resolve_payout_fee(_, info, earningsMinor, schedule):
    fee = PayoutService().calculate_payout_fee(
        earningsMinor,
        _enum(PayoutScheduleType, schedule, "schedule"),
    )
    return {
        "ok": True,
        "fee": {
            "earningsMinor": fee.earnings_minor,
            "feeMinor": fee.fee_minor,
            "netMinor": fee.net_minor,
            "feePercent": float(fee.fee_percent),
            "feeCapMinor": fee.fee_cap_minor,
        },
    }


# Mutations

@mutation.field("confirmPayment")
@error_payload
def resolve_confirm_payment(_, info, input: dict):
    """Payment collaborator hands over a verified charge."""
    order = PaymentConfirmationService().confirm_payment(_confirmation_from_input(input))
    return {
        "ok": True,
        "orderId": order.id,
        "status": order.status.value,
        "totalMinor": order.amount.total_minor,
    }


@mutation.field("setFulfillmentStatus")
@error_payload
def resolve_set_fulfillment_status(_, info, input: dict):
    """Vendor moves one of their own lines."""
    line = FulfillmentService().set_fulfillment_status(
        order_id=input["orderId"],
        line_key=input["lineKey"],
        requested_by=_requester(info),
        status=_enum(FulfillmentStatus, input["status"], "status"),
        qty_fulfilled=input.get("qtyFulfilled"),
        tracking_number=input.get("trackingNumber"),
        carrier=input.get("carrier"),
        note=input.get("note"),
        expected_version=input.get("expectedVersion"),
        idempotency_key=input.get("idempotencyKey"),
    )
    return {"ok": True, "line": fulfillment_line_to_dict(line)}


@mutation.field("addOrderNote")
@error_payload
def resolve_add_order_note(_, info, input: dict):
    note = OrderQueryService().add_note(input["orderId"], user_actor(_requester(info)), input["message"])
    return {"ok": True, "note": timeline_item_to_dict(note)}


# Define custom scalars
uuid_scalar = ScalarType("UUID")
datetime_scalar = ScalarType("DateTime")
json_scalar = ScalarType("JSON")
long_scalar = ScalarType("Long")


@uuid_scalar.serializer
def serialize_uuid(value):
    """Serialize UUID to string."""
    return str(value)


@uuid_scalar.value_parser
def parse_uuid_value(value):
    """Parse UUID from string."""
    if isinstance(value, UUID):
        return value
    return UUID(str(value))


@uuid_scalar.literal_parser
def parse_uuid_literal(ast, variable_values=None):
    """Parse UUID from GraphQL literal."""
    return UUID(str(ast.value))


@datetime_scalar.serializer
def serialize_datetime(value):
    """Serialize DateTime to ISO format string."""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


@datetime_scalar.value_parser
def parse_datetime_value(value):
    """Parse DateTime from string."""
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        raise ValueError("DateTime must carry a timezone offset")
    return parsed


@datetime_scalar.literal_parser
def parse_datetime_literal(ast, variable_values=None):
    return parse_datetime_value(ast.value)


@json_scalar.serializer
def serialize_json(value):
    return value


@json_scalar.value_parser
def parse_json_value(value):
    return value


@json_scalar.literal_parser
def parse_json_literal(ast, variable_values=None):
    return value_from_ast_untyped(ast, variable_values)


@long_scalar.serializer
def serialize_long(value):
    return int(value)


@long_scalar.value_parser
def parse_long_value(value):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("Expected an integer amount in minor units")
    return value


@long_scalar.literal_parser
def parse_long_literal(ast, variable_values=None):
    return int(ast.value)


# Create executable schema
schema = make_executable_schema(
    type_defs,
    query,
    mutation,
    uuid_scalar,
    datetime_scalar,
    json_scalar,
    long_scalar,
)
