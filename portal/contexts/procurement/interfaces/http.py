from __future__ import annotations

from typing import Any, Dict, List

from flask import Blueprint, current_app, jsonify, request

from portal.contexts.procurement.application.wiring import ProcurementServices
from portal.domain.contracts import (
    Actor,
    Allocation,
    AllocationLine,
    LineItemDraft,
    Order,
    QuoteLineOffer,
    QuoteTerms,
    allocation_to_dict,
    order_to_dict,
    parse_date,
    parse_datetime,
    parse_decimal,
    quote_to_dict,
    totals_to_dict,
)
from portal.errors import PermissionError as AppPermissionError, ValidationError
from portal.policies import (
    can_view_order,
    normalize_role,
    require_order_view,
    require_roles,
)
from portal.procurement.flow_policy import build_process_steps, flow_meta
from portal.ui_strings import frontend_bundle, status_label, success_message


procurement_bp = Blueprint("procurement", __name__, url_prefix="/api")


def _services() -> ProcurementServices:
    return current_app.extensions["procurement"]


def _actor() -> Actor:
    actor_id = str(request.headers.get("X-Actor-Id") or "").strip()
    role = normalize_role(request.headers.get("X-Actor-Role"))
    if not actor_id or not role:
        raise ValidationError(message_key="actor_required", payload={"fields": ["X-Actor-Id", "X-Actor-Role"]})
    display_name = str(request.headers.get("X-Actor-Name") or "").strip()
    return Actor(actor_id=actor_id, role=role, display_name=display_name or actor_id)


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError(payload={"field": "body"})
    return body


def _optional_string(payload: dict, field_name: str) -> str | None:
    value = payload.get(field_name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(payload={"field": field_name})
    normalized = value.strip()
    return normalized or None


def _optional_datetime(payload: dict, field_name: str):
    raw = payload.get(field_name)
    if raw in (None, ""):
        return None
    parsed = parse_datetime(raw)
    if parsed is None:
        raise ValidationError(payload={"field": field_name})
    return parsed


def _order_payload(order: Order) -> Dict[str, Any]:
    payload = order_to_dict(order)
    payload["status_label"] = status_label(order.status)
    payload["flow"] = flow_meta(order.status)
    payload["process_steps"] = build_process_steps(order.status)
    return payload


def _parse_items(payload: dict) -> List[LineItemDraft]:
    raw_items = payload.get("items")
    if not isinstance(raw_items, list):
        raise ValidationError(message_key="items_required", payload={"field": "items"})
    drafts: List[LineItemDraft] = []
    for position, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(message_key="item_invalid", payload={"field": "items", "line_id": position})
        drafts.append(
            LineItemDraft(
                quantity=raw.get("quantity"),
                product=str(raw.get("product") or ""),
                preferred_brand=_optional_string(raw, "preferred_brand"),
            )
        )
    return drafts


def _parse_offers(payload: dict) -> List[QuoteLineOffer]:
    raw_offers = payload.get("offers")
    if not isinstance(raw_offers, list):
        raise ValidationError(message_key="offer_invalid", payload={"field": "offers"})
    offers: List[QuoteLineOffer] = []
    for raw in raw_offers:
        if not isinstance(raw, dict):
            raise ValidationError(message_key="offer_invalid", payload={"field": "offers"})
        line_id = raw.get("line_id")
        if isinstance(line_id, bool) or not isinstance(line_id, int):
            raise ValidationError(message_key="offer_invalid", payload={"field": "line_id"})
        raw_price = raw.get("unit_price")
        price = parse_decimal(raw_price)
        if raw_price not in (None, "") and price is None:
            raise ValidationError(message_key="offer_invalid", payload={"field": "unit_price", "line_id": line_id})
        offers.append(
            QuoteLineOffer(
                line_id=line_id,
                unit_price=price,
                offered_brand=str(raw.get("offered_brand") or "").strip(),
                note=_optional_string(raw, "note"),
            )
        )
    return offers


def _parse_terms(payload: dict) -> QuoteTerms:
    raw_terms = payload.get("terms") or {}
    if not isinstance(raw_terms, dict):
        raise ValidationError(payload={"field": "terms"})
    raw_valid_until = raw_terms.get("valid_until")
    valid_until = parse_date(raw_valid_until)
    if raw_valid_until not in (None, "") and valid_until is None:
        raise ValidationError(payload={"field": "valid_until"})
    return QuoteTerms(
        payment_term=str(raw_terms.get("payment_term") or "").strip().lower(),
        delivery_days=raw_terms.get("delivery_days"),
        valid_until=valid_until,
    )


def _parse_allocation(order_id: str, payload: dict) -> Allocation | None:
    raw_lines = payload.get("lines")
    if raw_lines is None:
        return None
    if not isinstance(raw_lines, list):
        raise ValidationError(payload={"field": "lines"})
    lines = []
    for raw in raw_lines:
        if not isinstance(raw, dict) or isinstance(raw.get("line_id"), bool) or not isinstance(raw.get("line_id"), int):
            raise ValidationError(payload={"field": "lines"})
        supplier_id = str(raw.get("supplier_id") or "").strip() or None
        lines.append(
            AllocationLine(
                line_id=raw["line_id"],
                supplier_id=supplier_id,
                source=str(raw.get("source") or "manual"),
            )
        )
    return Allocation(order_id=order_id, lines=tuple(sorted(lines, key=lambda line: line.line_id)))


def _apply_overrides(allocation: Allocation, payload: dict) -> Allocation:
    overrides = payload.get("overrides") or {}
    if not isinstance(overrides, dict):
        raise ValidationError(payload={"field": "overrides"})
    engine = _services().engine
    for raw_line_id, supplier_id in sorted(overrides.items(), key=lambda item: str(item[0])):
        try:
            line_id = int(raw_line_id)
        except (TypeError, ValueError):
            raise ValidationError(payload={"field": "overrides", "line_id": raw_line_id}) from None
        allocation = engine.apply_manual_override(allocation, line_id, str(supplier_id or "").strip())
    return allocation


def _visible_order(order_id: str, actor: Actor, *, allow_suppliers: bool = True) -> Order:
    order = _services().lifecycle.get_order(order_id)
    require_order_view(actor, order, allow_suppliers=allow_suppliers)
    return order


@procurement_bp.route("/orders", methods=["GET", "POST"])
def orders_collection():
    actor = _actor()
    lifecycle = _services().lifecycle
    if request.method == "POST":
        payload = _json_body()
        order = lifecycle.create(
            actor,
            _parse_items(payload),
            _optional_datetime(payload, "expiration_date"),
            requested_delivery_date=_optional_datetime(payload, "requested_delivery_date"),
            terms=_optional_string(payload, "terms"),
            buyer_id=_optional_string(payload, "buyer_id"),
            buyer_name=_optional_string(payload, "buyer_name"),
        )
        return jsonify({"order": _order_payload(order), "message": success_message("order_created")}), 201

    role = normalize_role(actor.role)
    statuses = [value for value in request.args.getlist("status") if value.strip()] or None
    tab = (request.args.get("tab") or "").strip() or None
    buyer_id = actor.actor_id if role == "buyer" else (request.args.get("buyer_id") or "").strip() or None
    orders = lifecycle.list_orders(buyer_id=buyer_id, statuses=statuses, tab=tab)
    if role == "supplier":
        orders = [order for order in orders if can_view_order(actor, order)]
    return jsonify({"items": [_order_payload(order) for order in orders]})


@procurement_bp.route("/orders/counts", methods=["GET"])
def orders_counts():
    actor = _actor()
    require_roles(actor, "admin", "buyer", action="status_counts")
    buyer_id = actor.actor_id if normalize_role(actor.role) == "buyer" else None
    return jsonify({"counts": _services().lifecycle.status_counts(buyer_id=buyer_id)})


@procurement_bp.route("/orders/meta", methods=["GET"])
def orders_meta():
    return jsonify(frontend_bundle())


@procurement_bp.route("/orders/<string:order_id>", methods=["GET"])
def order_detail(order_id: str):
    actor = _actor()
    return jsonify({"order": _order_payload(_visible_order(order_id, actor))})


@procurement_bp.route("/orders/<string:order_id>/publish", methods=["POST"])
def order_publish(order_id: str):
    order = _services().lifecycle.publish(order_id, _actor())
    return jsonify({"order": _order_payload(order), "message": success_message("order_published")})


@procurement_bp.route("/orders/<string:order_id>/reject", methods=["POST"])
def order_reject(order_id: str):
    payload = _json_body()
    order = _services().lifecycle.reject(order_id, _actor(), reason=_optional_string(payload, "reason"))
    return jsonify({"order": _order_payload(order), "message": success_message("order_rejected")})


@procurement_bp.route("/orders/<string:order_id>/dispatch", methods=["POST"])
def order_dispatch(order_id: str):
    payload = _json_body()
    order = _services().lifecycle.dispatch(
        order_id,
        _actor(),
        driver_name=_optional_string(payload, "driver_name") or "",
        vehicle_id=_optional_string(payload, "vehicle_id") or "",
    )
    return jsonify({"order": _order_payload(order), "message": success_message("order_dispatched")})


@procurement_bp.route("/orders/<string:order_id>/confirm-delivery", methods=["POST"])
def order_confirm_delivery(order_id: str):
    order = _services().lifecycle.confirm_delivery(order_id, _actor())
    return jsonify({"order": _order_payload(order), "message": success_message("order_delivered")})


@procurement_bp.route("/orders/<string:order_id>/comments", methods=["POST"])
def order_comment(order_id: str):
    actor = _actor()
    payload = _json_body()
    _visible_order(order_id, actor)
    order = _services().lifecycle.add_comment(order_id, actor, _optional_string(payload, "text") or "")
    return jsonify({"order": _order_payload(order), "message": success_message("comment_added")}), 201


@procurement_bp.route("/orders/<string:order_id>/quotes", methods=["GET"])
def order_quotes(order_id: str):
    actor = _actor()
    _visible_order(order_id, actor, allow_suppliers=False)
    quotes = _services().ledger.list_quotes(order_id)
    return jsonify({"items": [quote_to_dict(quote) for quote in quotes]})


def _require_quote_access(actor: Actor, order_id: str, supplier_id: str) -> None:
    if normalize_role(actor.role) == "supplier":
        if actor.actor_id != supplier_id:
            raise AppPermissionError(payload={"action": "view_quote", "role": actor.role})
        _services().lifecycle.get_order(order_id)
        return
    _visible_order(order_id, actor, allow_suppliers=False)


@procurement_bp.route("/orders/<string:order_id>/quotes/<string:supplier_id>", methods=["GET", "PUT"])
def order_supplier_quote(order_id: str, supplier_id: str):
    actor = _actor()
    ledger = _services().ledger
    if request.method == "PUT":
        payload = _json_body()
        quote = ledger.submit_quote(
            order_id,
            supplier_id,
            _optional_string(payload, "supplier_name") or actor.display_name,
            _parse_offers(payload),
            _parse_terms(payload),
            actor=actor,
        )
        return jsonify({"quote": quote_to_dict(quote), "message": success_message("quote_submitted")})

    _require_quote_access(actor, order_id, supplier_id)
    return jsonify({"quote": quote_to_dict(ledger.get_quote(order_id, supplier_id))})


@procurement_bp.route("/orders/<string:order_id>/quotes/<string:supplier_id>/history", methods=["GET"])
def order_supplier_quote_history(order_id: str, supplier_id: str):
    actor = _actor()
    _require_quote_access(actor, order_id, supplier_id)
    history = _services().ledger.quote_history(order_id, supplier_id)
    return jsonify({"items": [quote_to_dict(quote) for quote in history]})


@procurement_bp.route("/orders/<string:order_id>/comparison", methods=["GET"])
def order_comparison(order_id: str):
    actor = _actor()
    _visible_order(order_id, actor, allow_suppliers=False)
    return jsonify(_services().engine.comparison_table(order_id))


@procurement_bp.route("/orders/<string:order_id>/allocation", methods=["GET", "POST"])
def order_allocation(order_id: str):
    actor = _actor()
    require_roles(actor, "admin", action="adjudicate")
    engine = _services().engine
    payload = _json_body() if request.method == "POST" else {}
    allocation = _parse_allocation(order_id, payload) or engine.compute_best_allocation(order_id)
    allocation = _apply_overrides(allocation, payload)
    return jsonify(
        {
            "allocation": allocation_to_dict(allocation),
            "totals": totals_to_dict(engine.compute_totals(order_id, allocation)),
            "missing_line_ids": engine.missing_lines(order_id, allocation),
        }
    )


@procurement_bp.route("/orders/<string:order_id>/adjudicate", methods=["POST"])
def order_adjudicate(order_id: str):
    actor = _actor()
    require_roles(actor, "admin", action="adjudicate")
    engine = _services().engine
    payload = _json_body()
    allocation = _parse_allocation(order_id, payload) or engine.compute_best_allocation(order_id)
    allocation = _apply_overrides(allocation, payload)
    order = engine.commit(order_id, allocation, actor)
    return jsonify({"order": _order_payload(order), "message": success_message("order_adjudicated")})


@procurement_bp.route("/suppliers/<string:supplier_id>/board", methods=["GET"])
def supplier_board(supplier_id: str):
    actor = _actor()
    require_roles(actor, "supplier", "admin", action="supplier_board")
    return jsonify({"items": _services().ledger.supplier_board(supplier_id, actor=actor)})
