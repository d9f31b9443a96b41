from __future__ import annotations

from typing import Iterable, Set

from portal.domain.contracts import Actor, Order
from portal.errors import PermissionError as AppPermissionError


VALID_ROLES: Set[str] = {"buyer", "admin", "supplier"}


def normalize_role(role: str | None, default: str = "") -> str:
    normalized = str(role or "").strip().lower()
    if normalized in VALID_ROLES:
        return normalized
    return default if default in VALID_ROLES else ""


def normalize_allowed_roles(roles: Iterable[str]) -> Set[str]:
    allowed: Set[str] = set()
    for role in roles:
        normalized = normalize_role(role)
        if normalized:
            allowed.add(normalized)
    return allowed


def has_any_role(role: str | None, allowed_roles: Iterable[str]) -> bool:
    normalized_role = normalize_role(role)
    allowed = normalize_allowed_roles(allowed_roles)
    return not allowed or normalized_role in allowed


def _denied(action: str, actor: Actor) -> AppPermissionError:
    return AppPermissionError(
        details=f"{actor.role or 'unknown'} cannot {action}",
        payload={"action": action, "role": actor.role},
    )


def require_roles(actor: Actor, *allowed_roles: str, action: str = "") -> str:
    if has_any_role(actor.role, allowed_roles):
        return normalize_role(actor.role)
    raise _denied(action or "perform this action", actor)


def is_owning_buyer(actor: Actor, order: Order) -> bool:
    return normalize_role(actor.role) == "buyer" and actor.actor_id == order.buyer_id


def is_winning_supplier(actor: Actor, order: Order) -> bool:
    if normalize_role(actor.role) != "supplier" or order.award is None:
        return False
    return actor.actor_id in order.award.supplier_ids


def require_order_access(actor: Actor, order: Order, action: str) -> None:
    """Role checks for lifecycle actions that depend on who owns or won the order."""
    role = normalize_role(actor.role)
    if role == "admin":
        return
    if action == "reject" and is_owning_buyer(actor, order):
        return
    if action == "dispatch" and is_winning_supplier(actor, order):
        return
    if action == "confirm_delivery" and (is_owning_buyer(actor, order) or is_winning_supplier(actor, order)):
        return
    raise _denied(action, actor)


def can_view_order(actor: Actor, order: Order) -> bool:
    role = normalize_role(actor.role)
    if role == "admin":
        return True
    if role == "buyer":
        return actor.actor_id == order.buyer_id
    if role == "supplier":
        return order.status.value == "in_review" or is_winning_supplier(actor, order)
    return False


def require_order_view(actor: Actor, order: Order, *, allow_suppliers: bool = True) -> None:
    role = normalize_role(actor.role)
    if role == "supplier" and not allow_suppliers:
        raise _denied("view_quotes", actor)
    if not can_view_order(actor, order):
        raise _denied("view", actor)
