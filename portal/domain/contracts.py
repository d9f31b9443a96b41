from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Tuple

from portal.procurement.flow_policy import OrderStatus, is_terminal, normalize_status


ALLOCATION_SOURCE_BEST_PRICE = "best_price"
ALLOCATION_SOURCE_MANUAL = "manual"


@dataclass(frozen=True)
class Actor:
    actor_id: str
    role: str
    display_name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", str(self.role or "").strip().lower())

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class LineItemDraft:
    quantity: int
    product: str
    preferred_brand: str | None = None


@dataclass(frozen=True)
class LineItem:
    line_id: int
    quantity: int
    product: str
    preferred_brand: str | None = None


@dataclass(frozen=True)
class Comment:
    comment_id: str
    author_id: str
    author_name: str
    text: str
    created_at: datetime
    is_admin: bool = False


@dataclass(frozen=True)
class DispatchInfo:
    driver_name: str
    vehicle_id: str
    dispatched_at: datetime
    tracking_reference: str


@dataclass(frozen=True)
class StatusChange:
    from_status: OrderStatus | None
    to_status: OrderStatus
    actor_id: str
    actor_role: str
    occurred_at: datetime
    reason: str | None = None


@dataclass(frozen=True)
class AwardedLine:
    line_id: int
    supplier_id: str
    supplier_name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal
    source: str = ALLOCATION_SOURCE_BEST_PRICE


@dataclass(frozen=True)
class Award:
    lines: Tuple[AwardedLine, ...]
    per_supplier_total: Tuple[Tuple[str, Decimal], ...]
    grand_total: Decimal
    awarded_at: datetime
    awarded_by: str
    # (supplier_id, revision) of every quote the award was computed from.
    quote_revisions: Tuple[Tuple[str, int], ...] = ()

    @property
    def supplier_ids(self) -> Tuple[str, ...]:
        return tuple(supplier_id for supplier_id, _total in self.per_supplier_total)

    def was_computed_from(self, supplier_id: str, revision: int) -> bool:
        return (supplier_id, revision) in self.quote_revisions


@dataclass(frozen=True)
class Order:
    order_id: str
    buyer_id: str
    buyer_name: str
    items: Tuple[LineItem, ...]
    status: OrderStatus
    created_at: datetime
    expiration_date: datetime | None = None
    requested_delivery_date: datetime | None = None
    terms: str | None = None
    comments: Tuple[Comment, ...] = ()
    dispatch_info: DispatchInfo | None = None
    award: Award | None = None
    status_history: Tuple[StatusChange, ...] = ()
    rejection_reason: str | None = None
    last_quote_at: datetime | None = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def line_ids(self) -> Tuple[int, ...]:
        return tuple(item.line_id for item in self.items)

    def line(self, line_id: int) -> LineItem | None:
        for item in self.items:
            if item.line_id == line_id:
                return item
        return None


@dataclass(frozen=True)
class QuoteLineOffer:
    line_id: int
    unit_price: Decimal | None = None
    offered_brand: str = ""
    note: str | None = None

    @property
    def is_quoted(self) -> bool:
        # 0 and missing prices both mean "no offer for this line".
        return self.unit_price is not None and self.unit_price > 0


@dataclass(frozen=True)
class QuoteTerms:
    payment_term: str
    delivery_days: int
    valid_until: date | None = None


@dataclass(frozen=True)
class Quote:
    order_id: str
    supplier_id: str
    supplier_name: str
    offers: Tuple[QuoteLineOffer, ...]
    terms: QuoteTerms
    submitted_at: datetime
    first_submitted_at: datetime
    revision: int = 1

    def offer_for(self, line_id: int) -> QuoteLineOffer | None:
        for offer in self.offers:
            if offer.line_id == line_id:
                return offer
        return None

    def price_for(self, line_id: int) -> Decimal | None:
        offer = self.offer_for(line_id)
        if offer is None or not offer.is_quoted:
            return None
        return offer.unit_price

    @property
    def quoted_line_count(self) -> int:
        return sum(1 for offer in self.offers if offer.is_quoted)


@dataclass(frozen=True)
class AllocationLine:
    line_id: int
    supplier_id: str | None
    source: str = ALLOCATION_SOURCE_BEST_PRICE


@dataclass(frozen=True)
class Allocation:
    order_id: str
    lines: Tuple[AllocationLine, ...] = field(default_factory=tuple)

    def supplier_for(self, line_id: int) -> str | None:
        for line in self.lines:
            if line.line_id == line_id:
                return line.supplier_id
        return None

    def source_for(self, line_id: int) -> str | None:
        for line in self.lines:
            if line.line_id == line_id:
                return line.source
        return None

    @property
    def unassigned_line_ids(self) -> Tuple[int, ...]:
        return tuple(line.line_id for line in self.lines if not line.supplier_id)

    def as_mapping(self) -> Dict[int, str | None]:
        return {line.line_id: line.supplier_id for line in self.lines}


@dataclass(frozen=True)
class Totals:
    per_supplier_total: Tuple[Tuple[str, Decimal], ...]
    grand_total: Decimal
    unpriced_line_ids: Tuple[int, ...] = ()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    resolved = to_utc(value)
    if resolved is None:
        return None
    return resolved.isoformat().replace("+00:00", "Z")


def parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raw = str(value).strip()
    if not raw:
        return None
    normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    return to_utc(parsed)


def parse_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def parse_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    try:
        parsed = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return parsed


def _money(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(value)


def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "order_id": order.order_id,
        "buyer_id": order.buyer_id,
        "buyer_name": order.buyer_name,
        "items": [
            {
                "line_id": item.line_id,
                "quantity": item.quantity,
                "product": item.product,
                "preferred_brand": item.preferred_brand,
            }
            for item in order.items
        ],
        "status": order.status.value,
        "created_at": _iso(order.created_at),
        "expiration_date": _iso(order.expiration_date),
        "requested_delivery_date": _iso(order.requested_delivery_date),
        "terms": order.terms,
        "comments": [
            {
                "comment_id": comment.comment_id,
                "author_id": comment.author_id,
                "author_name": comment.author_name,
                "text": comment.text,
                "created_at": _iso(comment.created_at),
                "is_admin": comment.is_admin,
            }
            for comment in order.comments
        ],
        "dispatch_info": (
            {
                "driver_name": order.dispatch_info.driver_name,
                "vehicle_id": order.dispatch_info.vehicle_id,
                "dispatched_at": _iso(order.dispatch_info.dispatched_at),
                "tracking_reference": order.dispatch_info.tracking_reference,
            }
            if order.dispatch_info
            else None
        ),
        "award": award_to_dict(order.award) if order.award else None,
        "status_history": [
            {
                "from_status": change.from_status.value if change.from_status else None,
                "to_status": change.to_status.value,
                "actor_id": change.actor_id,
                "actor_role": change.actor_role,
                "occurred_at": _iso(change.occurred_at),
                "reason": change.reason,
            }
            for change in order.status_history
        ],
        "rejection_reason": order.rejection_reason,
        "last_quote_at": _iso(order.last_quote_at),
        "version": order.version,
    }


def award_to_dict(award: Award) -> Dict[str, Any]:
    return {
        "lines": [
            {
                "line_id": line.line_id,
                "supplier_id": line.supplier_id,
                "supplier_name": line.supplier_name,
                "unit_price": _money(line.unit_price),
                "quantity": line.quantity,
                "line_total": _money(line.line_total),
                "source": line.source,
            }
            for line in award.lines
        ],
        "per_supplier_total": {supplier_id: _money(total) for supplier_id, total in award.per_supplier_total},
        "grand_total": _money(award.grand_total),
        "awarded_at": _iso(award.awarded_at),
        "awarded_by": award.awarded_by,
        "quote_revisions": [
            {"supplier_id": supplier_id, "revision": revision} for supplier_id, revision in award.quote_revisions
        ],
    }


def order_from_dict(data: Mapping[str, Any]) -> Order:
    award_data = data.get("award") or None
    dispatch_data = data.get("dispatch_info") or None
    return Order(
        order_id=str(data["order_id"]),
        buyer_id=str(data.get("buyer_id") or ""),
        buyer_name=str(data.get("buyer_name") or ""),
        items=tuple(
            LineItem(
                line_id=int(item["line_id"]),
                quantity=int(item["quantity"]),
                product=str(item["product"]),
                preferred_brand=item.get("preferred_brand"),
            )
            for item in data.get("items") or []
        ),
        status=normalize_status(data.get("status")) or OrderStatus.PENDING_APPROVAL,
        created_at=parse_datetime(data.get("created_at")) or _utc_now(),
        expiration_date=parse_datetime(data.get("expiration_date")),
        requested_delivery_date=parse_datetime(data.get("requested_delivery_date")),
        terms=data.get("terms"),
        comments=tuple(
            Comment(
                comment_id=str(comment["comment_id"]),
                author_id=str(comment.get("author_id") or ""),
                author_name=str(comment.get("author_name") or ""),
                text=str(comment.get("text") or ""),
                created_at=parse_datetime(comment.get("created_at")) or _utc_now(),
                is_admin=bool(comment.get("is_admin")),
            )
            for comment in data.get("comments") or []
        ),
        dispatch_info=(
            DispatchInfo(
                driver_name=str(dispatch_data.get("driver_name") or ""),
                vehicle_id=str(dispatch_data.get("vehicle_id") or ""),
                dispatched_at=parse_datetime(dispatch_data.get("dispatched_at")) or _utc_now(),
                tracking_reference=str(dispatch_data.get("tracking_reference") or ""),
            )
            if dispatch_data
            else None
        ),
        award=award_from_dict(award_data) if award_data else None,
        status_history=tuple(
            StatusChange(
                from_status=normalize_status(change.get("from_status")),
                to_status=normalize_status(change.get("to_status")) or OrderStatus.PENDING_APPROVAL,
                actor_id=str(change.get("actor_id") or ""),
                actor_role=str(change.get("actor_role") or ""),
                occurred_at=parse_datetime(change.get("occurred_at")) or _utc_now(),
                reason=change.get("reason"),
            )
            for change in data.get("status_history") or []
        ),
        rejection_reason=data.get("rejection_reason"),
        last_quote_at=parse_datetime(data.get("last_quote_at")),
        version=int(data.get("version") or 1),
    )


def award_from_dict(data: Mapping[str, Any]) -> Award:
    totals = data.get("per_supplier_total") or {}
    return Award(
        lines=tuple(
            AwardedLine(
                line_id=int(line["line_id"]),
                supplier_id=str(line["supplier_id"]),
                supplier_name=str(line.get("supplier_name") or ""),
                unit_price=Decimal(str(line["unit_price"])),
                quantity=int(line["quantity"]),
                line_total=Decimal(str(line["line_total"])),
                source=str(line.get("source") or ALLOCATION_SOURCE_BEST_PRICE),
            )
            for line in data.get("lines") or []
        ),
        per_supplier_total=tuple((str(key), Decimal(str(value))) for key, value in totals.items()),
        grand_total=Decimal(str(data.get("grand_total") or "0")),
        awarded_at=parse_datetime(data.get("awarded_at")) or _utc_now(),
        awarded_by=str(data.get("awarded_by") or ""),
        quote_revisions=tuple(
            (str(entry["supplier_id"]), int(entry["revision"])) for entry in data.get("quote_revisions") or []
        ),
    )


def quote_to_dict(quote: Quote) -> Dict[str, Any]:
    return {
        "order_id": quote.order_id,
        "supplier_id": quote.supplier_id,
        "supplier_name": quote.supplier_name,
        "offers": [
            {
                "line_id": offer.line_id,
                "unit_price": _money(offer.unit_price),
                "offered_brand": offer.offered_brand,
                "note": offer.note,
            }
            for offer in quote.offers
        ],
        "terms": {
            "payment_term": quote.terms.payment_term,
            "delivery_days": quote.terms.delivery_days,
            "valid_until": quote.terms.valid_until.isoformat() if quote.terms.valid_until else None,
        },
        "submitted_at": _iso(quote.submitted_at),
        "first_submitted_at": _iso(quote.first_submitted_at),
        "revision": quote.revision,
    }


def quote_from_dict(data: Mapping[str, Any]) -> Quote:
    terms = data.get("terms") or {}
    submitted_at = parse_datetime(data.get("submitted_at")) or _utc_now()
    return Quote(
        order_id=str(data["order_id"]),
        supplier_id=str(data["supplier_id"]),
        supplier_name=str(data.get("supplier_name") or ""),
        offers=tuple(
            QuoteLineOffer(
                line_id=int(offer["line_id"]),
                unit_price=parse_decimal(offer.get("unit_price")),
                offered_brand=str(offer.get("offered_brand") or ""),
                note=offer.get("note"),
            )
            for offer in data.get("offers") or []
        ),
        terms=QuoteTerms(
            payment_term=str(terms.get("payment_term") or ""),
            delivery_days=int(terms.get("delivery_days") or 0),
            valid_until=parse_date(terms.get("valid_until")),
        ),
        submitted_at=submitted_at,
        first_submitted_at=parse_datetime(data.get("first_submitted_at")) or submitted_at,
        revision=int(data.get("revision") or 1),
    )


def allocation_to_dict(allocation: Allocation) -> Dict[str, Any]:
    return {
        "order_id": allocation.order_id,
        "lines": [
            {"line_id": line.line_id, "supplier_id": line.supplier_id, "source": line.source}
            for line in allocation.lines
        ],
        "unassigned_line_ids": list(allocation.unassigned_line_ids),
    }


def totals_to_dict(totals: Totals) -> Dict[str, Any]:
    return {
        "per_supplier_total": {supplier_id: _money(total) for supplier_id, total in totals.per_supplier_total},
        "grand_total": _money(totals.grand_total),
        "unpriced_line_ids": list(totals.unpriced_line_ids),
    }
