from __future__ import annotations

from typing import Dict, List

from portal.procurement.flow_policy import frontend_bundle as flow_frontend_bundle


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "Portal de Compras",
    "order": "Solicitud de cotizacion",
    "quote": "Cotizacion",
    "award": "Adjudicacion",
    "supplier": "Proveedor",
    "buyer": "Institucion",
    "dispatch": "Despacho",
}


STATUS_GROUPS: Dict[str, List[Dict[str, str]]] = {
    "pedido": [
        {
            "key": "pending_approval",
            "label": "Pendiente Aprobacion",
            "description": "Solicitud creada, a la espera de revision del administrador.",
        },
        {
            "key": "in_review",
            "label": "En Licitacion",
            "description": "Solicitud visible para proveedores y abierta a cotizaciones.",
        },
        {
            "key": "in_preparation",
            "label": "En Preparacion",
            "description": "Solicitud adjudicada; los proveedores preparan el pedido.",
        },
        {
            "key": "on_its_way",
            "label": "En Camino",
            "description": "Pedido despachado con transporte asignado.",
        },
        {
            "key": "delivered",
            "label": "Entregado",
            "description": "Entrega confirmada. La solicitud queda cerrada.",
        },
        {
            "key": "rejected",
            "label": "Rechazado",
            "description": "Solicitud cerrada sin continuidad.",
        },
    ],
    "proveedor": [
        {
            "key": "pending",
            "label": "Pendiente",
            "description": "Licitacion abierta que el proveedor aun no cotizo.",
        },
        {
            "key": "quoted",
            "label": "Cotizada",
            "description": "El proveedor ya envio una cotizacion vigente.",
        },
        {
            "key": "expired",
            "label": "Vencida",
            "description": "El plazo de la licitacion ya cerro.",
        },
    ],
}


PAYMENT_TERM_LABELS: Dict[str, str] = {
    "cash": "Contado",
    "net_15": "15 dias",
    "net_30": "30 dias",
    "net_60": "60 dias",
    "net_90": "90 dias",
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "order_created": "Solicitud creada correctamente.",
        "order_published": "Solicitud publicada para licitacion.",
        "order_adjudicated": "Licitacion adjudicada.",
        "order_dispatched": "Pedido despachado correctamente.",
        "order_delivered": "Entrega confirmada.",
        "order_rejected": "Solicitud rechazada.",
        "quote_submitted": "Cotizacion enviada.",
        "comment_added": "Mensaje enviado.",
    },
    "error": {
        "validation_error": "Los datos enviados no son validos.",
        "items_required": "Agrega al menos un articulo a la solicitud.",
        "item_invalid": "Cada articulo necesita cantidad mayor a cero y descripcion.",
        "expiration_required": "Indica la fecha de cierre de la licitacion.",
        "expiration_in_past": "La fecha de cierre de la licitacion ya paso.",
        "comment_required": "El mensaje no puede estar vacio.",
        "dispatch_details_required": "Indica chofer y patente del vehiculo.",
        "offer_invalid": "Los precios y plazos de la cotizacion no son validos.",
        "payment_term_invalid": "Condicion de pago invalida.",
        "delivery_days_invalid": "El plazo de entrega debe ser de al menos un dia.",
        "actor_required": "Falta identificar al usuario que realiza la accion.",
        "permission_denied": "No tienes permiso para realizar esta accion.",
        "order_not_found": "Solicitud no encontrada.",
        "quote_not_found": "Cotizacion no encontrada para este proveedor.",
        "not_found": "Registro no encontrado.",
        "invalid_transition": "Esta accion no esta permitida para el estado actual.",
        "order_already_terminal": "La solicitud ya esta cerrada.",
        "order_not_open": "La licitacion no acepta cotizaciones en este momento.",
        "line_items_mismatch": "La cotizacion debe incluir exactamente los articulos de la solicitud.",
        "allocation_incomplete": "Todos los articulos necesitan una oferta valida antes de adjudicar.",
        "override_invalid": "El proveedor elegido no tiene una oferta valida para ese articulo.",
        "concurrent_modification": "La solicitud fue modificada por otra persona. Intenta nuevamente.",
        "invariant_violation": "Se detecto una inconsistencia en los montos calculados.",
        "action_invalid": "Accion invalida para esta operacion.",
        "unexpected_error": "No se pudo completar la operacion. Intenta nuevamente en unos instantes.",
    },
}


def all_status_items() -> List[Dict[str, str]]:
    combined: List[Dict[str, str]] = []
    for group_items in STATUS_GROUPS.values():
        combined.extend(group_items)
    return combined


def build_status_labels() -> Dict[str, str]:
    labels: Dict[str, str] = {}
    for item in all_status_items():
        labels[item["key"]] = item["label"]
    return labels


STATUS_LABELS = build_status_labels()


def status_label(status: str | None, default: str | None = None) -> str:
    key = str(getattr(status, "value", status) or "").strip()
    label = STATUS_LABELS.get(key)
    if label:
        return label
    if default is not None:
        return default
    return key


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def frontend_bundle() -> Dict[str, object]:
    return {
        "terms": FRIENDLY_TERMS,
        "status_labels": STATUS_LABELS,
        "payment_terms": PAYMENT_TERM_LABELS,
        "messages": MESSAGES,
        "flow": flow_frontend_bundle(),
    }
