from __future__ import annotations

from enum import Enum
from typing import Dict, List, Tuple


class OrderStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    IN_REVIEW = "in_review"
    IN_PREPARATION = "in_preparation"
    ON_ITS_WAY = "on_its_way"
    DELIVERED = "delivered"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.REJECTED})


PROCESS_STAGES: List[Dict[str, str]] = [
    {"key": OrderStatus.PENDING_APPROVAL.value, "label": "Aprobacion"},
    {"key": OrderStatus.IN_REVIEW.value, "label": "Licitacion"},
    {"key": OrderStatus.IN_PREPARATION.value, "label": "Preparacion"},
    {"key": OrderStatus.ON_ITS_WAY.value, "label": "En camino"},
    {"key": OrderStatus.DELIVERED.value, "label": "Entrega"},
]


# action -> (source statuses, target status); the only edges of the lifecycle.
TRANSITIONS: Dict[str, Tuple[frozenset, OrderStatus]] = {
    "publish": (frozenset({OrderStatus.PENDING_APPROVAL}), OrderStatus.IN_REVIEW),
    "adjudicate": (frozenset({OrderStatus.IN_REVIEW}), OrderStatus.IN_PREPARATION),
    "dispatch": (frozenset({OrderStatus.IN_PREPARATION}), OrderStatus.ON_ITS_WAY),
    "confirm_delivery": (frozenset({OrderStatus.ON_ITS_WAY}), OrderStatus.DELIVERED),
    "reject": (
        frozenset({OrderStatus.PENDING_APPROVAL, OrderStatus.IN_REVIEW, OrderStatus.IN_PREPARATION}),
        OrderStatus.REJECTED,
    ),
}


ACTION_LABELS: Dict[str, str] = {
    "publish": "Publicar licitacion",
    "adjudicate": "Adjudicar",
    "dispatch": "Despachar pedido",
    "confirm_delivery": "Confirmar entrega",
    "reject": "Rechazar solicitud",
    "submit_quote": "Enviar cotizacion",
    "view_quotes": "Comparar cotizaciones",
    "add_comment": "Enviar mensaje",
    "view_history": "Ver historial",
}


FLOW_POLICY: Dict[str, Dict[str, object]] = {
    OrderStatus.PENDING_APPROVAL.value: {
        "allowed_actions": ["publish", "reject", "add_comment"],
        "primary_action": "publish",
    },
    OrderStatus.IN_REVIEW.value: {
        "allowed_actions": ["submit_quote", "view_quotes", "adjudicate", "reject", "add_comment"],
        "primary_action": "view_quotes",
    },
    OrderStatus.IN_PREPARATION.value: {
        "allowed_actions": ["dispatch", "view_quotes", "reject", "add_comment"],
        "primary_action": "dispatch",
    },
    OrderStatus.ON_ITS_WAY.value: {
        "allowed_actions": ["confirm_delivery", "view_quotes", "add_comment"],
        "primary_action": "confirm_delivery",
    },
    OrderStatus.DELIVERED.value: {
        "allowed_actions": ["view_history", "view_quotes", "add_comment"],
        "primary_action": "view_history",
    },
    OrderStatus.REJECTED.value: {
        "allowed_actions": ["view_history", "add_comment"],
        "primary_action": "view_history",
    },
}


ADMIN_TABS: Dict[str, frozenset] = {
    "pending": frozenset({OrderStatus.PENDING_APPROVAL}),
    "bidding": frozenset({OrderStatus.IN_REVIEW}),
    "logistics": frozenset({OrderStatus.IN_PREPARATION, OrderStatus.ON_ITS_WAY}),
    "history": frozenset({OrderStatus.DELIVERED, OrderStatus.REJECTED}),
}


def normalize_status(status: OrderStatus | str | None) -> OrderStatus | None:
    if isinstance(status, OrderStatus):
        return status
    try:
        return OrderStatus(str(status or "").strip().lower())
    except ValueError:
        return None


def is_terminal(status: OrderStatus | str | None) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES


def transition_target(action: str, status: OrderStatus | str | None) -> OrderStatus | None:
    """Target status for `action` from `status`, or None when the edge does not exist."""
    edge = TRANSITIONS.get(action)
    current = normalize_status(status)
    if edge is None or current is None:
        return None
    sources, target = edge
    if current not in sources:
        return None
    return target


def _fallback_policy() -> Dict[str, object]:
    return {"allowed_actions": [], "primary_action": None}


def status_policy(status: OrderStatus | str | None) -> Dict[str, object]:
    current = normalize_status(status)
    if current is None:
        return _fallback_policy()
    return FLOW_POLICY.get(current.value, _fallback_policy())


def allowed_actions(status: OrderStatus | str | None) -> List[str]:
    actions = status_policy(status).get("allowed_actions") or []
    if not isinstance(actions, list):
        return []
    return [str(action) for action in actions]


def primary_action(status: OrderStatus | str | None) -> str | None:
    action = status_policy(status).get("primary_action")
    if not action:
        return None
    return str(action)


def action_allowed(status: OrderStatus | str | None, action: str) -> bool:
    if not action:
        return False
    return action in set(allowed_actions(status))


def action_label(action: str, fallback: str | None = None) -> str:
    label = ACTION_LABELS.get(action)
    if label:
        return label
    if fallback is not None:
        return fallback
    return action


def flow_meta(status: OrderStatus | str | None) -> Dict[str, object]:
    current = normalize_status(status)
    return {
        "status": current.value if current else None,
        "terminal": is_terminal(current),
        "allowed_actions": allowed_actions(current),
        "primary_action": primary_action(current),
    }


def _stage_index(status: OrderStatus | str | None) -> int:
    current = normalize_status(status)
    for idx, item in enumerate(PROCESS_STAGES):
        if current is not None and item["key"] == current.value:
            return idx
    return 0


def build_process_steps(status: OrderStatus | str | None) -> List[Dict[str, object]]:
    current = normalize_status(status)
    current_idx = _stage_index(current)
    steps: List[Dict[str, object]] = []
    for idx, stage in enumerate(PROCESS_STAGES):
        state = "future"
        if current == OrderStatus.REJECTED:
            state = "cancelled"
        elif current == OrderStatus.DELIVERED or idx < current_idx:
            state = "completed"
        elif idx == current_idx:
            state = "current"
        steps.append(
            {
                "key": stage["key"],
                "label": stage["label"],
                "state": state,
            }
        )
    return steps


def frontend_bundle() -> Dict[str, object]:
    return {
        "stages": PROCESS_STAGES,
        "policy": FLOW_POLICY,
        "action_labels": ACTION_LABELS,
        "tabs": {tab: sorted(status.value for status in statuses) for tab, statuses in ADMIN_TABS.items()},
    }
