"""Normalization of capability results into client `options` items.

Normalizers rename fields only: item order and item count are preserved.
"""

from __future__ import annotations

from typing import Any, Callable

FLIGHT_IMAGE_URL = "https://images.unsplash.com/photo-1436491865332-7a61a109cc05?w=400"


def result_items(result: Any, result_key: str | None) -> list[Any]:
    """Select the list of items a capability result carries."""
    if result_key and isinstance(result, dict):
        selected = result.get(result_key)
        if selected is None:
            return []
        return selected if isinstance(selected, list) else [selected]
    if isinstance(result, list):
        return result
    if result is None:
        return []
    return [result]


def _hospital_option(item: Any) -> Any:
    if not isinstance(item, dict):
        return item
    return {
        "id": item.get("id"),
        "title": item.get("name"),
        "description": f"{item.get('location')} • {item.get('accreditation_info')} • Rating: {item.get('rating')}/5",
        "price": item.get("price_range"),
        "imageUrl": item.get("image_url"),
        "badge": item.get("accreditation_info"),
        "contact_email": item.get("contact_email"),
        "estimated_cost_low": item.get("estimated_cost_low"),
        "estimated_cost_high": item.get("estimated_cost_high"),
    }


def _flight_option(item: Any) -> Any:
    if not isinstance(item, dict):
        return item
    return {
        "id": item.get("id"),
        "title": f"{item.get('airline')} {item.get('logo')}",
        "description": f"{item.get('origin')} → {item.get('destination')} • {item.get('duration')} • {item.get('stops')}",
        "price": f"${item.get('price')}",
        "imageUrl": FLIGHT_IMAGE_URL,
        "badge": item.get("stops"),
        "details": f"Depart: {item.get('departureTime')} • Arrive: {item.get('arrivalTime')}",
        "bookingUrl": item.get("bookingUrl"),
    }


def _first_present(item: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def _money(value: Any) -> str:
    if isinstance(value, (int, float)):
        return f"${value:,.0f}"
    return str(value)


def _cost_estimate_option(item: Any, position: int) -> Any:
    if not isinstance(item, dict):
        return item
    low = _first_present(item, "totalLow", "estimated_cost_low", "low")
    high = _first_present(item, "totalHigh", "estimated_cost_high", "high")
    if low is not None and high is not None:
        price = f"{_money(low)} - {_money(high)}"
    elif low is not None or high is not None:
        price = _money(low if low is not None else high)
    else:
        price = None
    return {
        **item,
        "id": item.get("id") or f"estimate-{position + 1}",
        "title": _first_present(item, "title", "procedure", "name") or "Cost estimate",
        "price": price,
        "estimated_cost_low": low,
        "estimated_cost_high": high,
    }


_NORMALIZERS: dict[str, Callable[[list[Any]], list[Any]]] = {
    "hospitals": lambda items: [_hospital_option(item) for item in items],
    "flights": lambda items: [_flight_option(item) for item in items],
    "cost_estimate": lambda items: [_cost_estimate_option(item, pos) for pos, item in enumerate(items)],
    "raw": lambda items: list(items),
}


def normalize_options(result: Any, *, options_format: str, result_key: str | None = None) -> list[Any]:
    """Turn a raw capability result into the `options` event list."""
    normalizer = _NORMALIZERS.get(options_format, _NORMALIZERS["raw"])
    return normalizer(result_items(result, result_key))
