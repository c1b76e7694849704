"""
Mapping of marketplace item payloads onto local catalog fields.

Brand extraction is an explicit ordered list of strategies. Each takes the
raw item and returns a brand or None; the first non-empty answer wins, so the
fallback order can be read (and tested) in one place.
"""

import hashlib
import json
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

BrandStrategy = Callable[[Dict[str, Any]], Optional[str]]

_WEIGHT_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*(kg|quilos?|gramas?|gr|g)\b", re.IGNORECASE)
_LENGTH_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*(mm|cm|m)\b", re.IGNORECASE)

_LENGTH_TO_CM = {"mm": 0.1, "cm": 1.0, "m": 100.0}

_DIMENSION_ATTRIBUTE_IDS = {"WEIGHT", "DIMENSIONS", "LENGTH", "WIDTH", "HEIGHT"}
_DIMENSION_ATTRIBUTE_NAMES = {"peso", "dimensões", "comprimento", "largura", "altura"}


def _attributes(item: Dict[str, Any]) -> List[Dict[str, Any]]:
    attributes = item.get("attributes")
    return attributes if isinstance(attributes, list) else []


def _attribute_value(item: Dict[str, Any], ids: Iterable[str] = (), names: Iterable[str] = ()) -> Optional[str]:
    wanted_ids = {i.lower() for i in ids}
    wanted_names = {n.lower() for n in names}
    for attr in _attributes(item):
        value = attr.get("value_name")
        if not value:
            continue
        attr_id = (attr.get("id") or "").lower()
        attr_name = (attr.get("name") or "").lower()
        if attr_id in wanted_ids or attr_name in wanted_names:
            return str(value).strip() or None
    return None


# --- Brand strategies, in priority order ---

def brand_from_brand_attribute_id(item: Dict[str, Any]) -> Optional[str]:
    return _attribute_value(item, ids=("BRAND",))


def brand_from_brand_attribute_name(item: Dict[str, Any]) -> Optional[str]:
    return _attribute_value(item, names=("marca", "brand"))


def brand_from_manufacturer_attribute(item: Dict[str, Any]) -> Optional[str]:
    return _attribute_value(item, ids=("MANUFACTURER",), names=("fabricante", "manufacturer"))


def brand_from_item_field(item: Dict[str, Any]) -> Optional[str]:
    value = item.get("brand")
    return str(value).strip() or None if value else None


BRAND_STRATEGIES: Sequence[BrandStrategy] = (
    brand_from_brand_attribute_id,
    brand_from_brand_attribute_name,
    brand_from_manufacturer_attribute,
    brand_from_item_field,
)


def extract_brand(item: Dict[str, Any], strategies: Sequence[BrandStrategy] = BRAND_STRATEGIES) -> Optional[str]:
    for strategy in strategies:
        brand = strategy(item)
        if brand:
            return brand
    return None


# --- Weight and dimensions ---

def _to_float(raw: str) -> float:
    return float(raw.replace(",", "."))


def extract_weight_and_dimensions(attributes: List[Dict[str, Any]]) -> Dict[str, Optional[float]]:
    """
    Parse weight (grams and kg) and width/height/length (cm) out of free-text
    attribute values such as "1,5 kg" or "120 mm".
    """
    result: Dict[str, Optional[float]] = {
        "weight": None,
        "weight_kg": None,
        "width_cm": None,
        "height_cm": None,
        "length_cm": None,
    }

    for attr in attributes or []:
        name = (attr.get("name") or "").lower()
        value = (attr.get("value_name") or "").lower()
        if not name or not value:
            continue

        if "peso" in name or "weight" in name:
            match = _WEIGHT_RE.search(value)
            if match:
                amount = _to_float(match.group(1))
                unit = match.group(2).lower()
                if unit == "kg" or unit.startswith("quilo"):
                    result["weight_kg"] = amount
                    result["weight"] = amount * 1000
                else:
                    result["weight"] = amount
                    result["weight_kg"] = amount / 1000
            continue

        for keys, field in (
            (("largura", "width"), "width_cm"),
            (("altura", "height"), "height_cm"),
            (("comprimento", "length", "profundidade"), "length_cm"),
        ):
            if any(key in name for key in keys):
                match = _LENGTH_RE.search(value)
                if match:
                    result[field] = _to_float(match.group(1)) * _LENGTH_TO_CM[match.group(2).lower()]
                break

    return result


def extract_dimensions(item: Dict[str, Any]) -> Dict[str, Any]:
    """Raw dimension data, preferring shipping dimensions, then package, then attributes"""
    shipping = item.get("shipping") or {}
    if shipping.get("dimensions"):
        return {"source": "shipping.dimensions", "data": shipping["dimensions"]}
    if item.get("package"):
        return {"source": "package", "data": item["package"]}

    dim_attrs = [
        attr for attr in _attributes(item)
        if attr.get("id") in _DIMENSION_ATTRIBUTE_IDS
        or (attr.get("name") or "").lower() in _DIMENSION_ATTRIBUTE_NAMES
    ]
    if dim_attrs:
        return {"source": "attributes", "data": dim_attrs}
    return {}


def _picture_urls(item: Dict[str, Any]) -> List[str]:
    urls = []
    for picture in item.get("pictures") or []:
        url = picture.get("secure_url") or picture.get("url")
        if url:
            urls.append(url)
    return urls


def map_item_to_product(item: Dict[str, Any], description: str = "", seller_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Convert a marketplace item payload into Product column values.

    Keys whose value could not be determined are left out, so an upsert never
    blanks out data the catalog already has.
    """
    external_id = str(item["id"])
    mapped: Dict[str, Any] = {
        "external_id": external_id,
        "name": item.get("title") or f"Marketplace item {external_id}",
        "description": description or item.get("description")
        or f"Imported from the marketplace (ID: {external_id})",
        "seller_id": str(seller_id or item.get("seller_id") or "") or None,
    }

    if item.get("price") is not None:
        price = float(item["price"])
        mapped["original_price"] = float(item.get("original_price") or price)
        mapped["discount_price"] = price

    if item.get("available_quantity") is not None:
        try:
            mapped["stock_quantity"] = int(item["available_quantity"])
        except (TypeError, ValueError):
            mapped["stock_quantity"] = 0

    pictures = _picture_urls(item)
    if pictures:
        mapped["image_url"] = pictures[0]
        mapped["images"] = pictures

    attributes = _attributes(item)
    if attributes:
        mapped["specifications"] = {
            attr["name"]: attr["value_name"]
            for attr in attributes
            if attr.get("name") and attr.get("value_name")
        }

    brand = extract_brand(item)
    if brand:
        mapped["brand"] = brand

    family_id = item.get("parent_item_id") or item.get("family_id") or item.get("category_id")
    if family_id:
        mapped["family_id"] = str(family_id)

    mapped.update({k: v for k, v in extract_weight_and_dimensions(attributes).items() if v is not None})

    dimensions = extract_dimensions(item)
    if dimensions:
        mapped["dimensions"] = dimensions

    return {k: v for k, v in mapped.items() if v is not None}


def snapshot_hash(item: Dict[str, Any], description: str = "") -> str:
    """SHA-256 over the fields whose change should trigger a catalog write"""
    relevant = {
        "title": item.get("title") or "",
        "price": item.get("price") or "",
        "available_quantity": item.get("available_quantity") or "",
        "condition": item.get("condition") or "",
        "status": item.get("status") or "",
        "description": description or "",
        "pictures": "".join(_picture_urls(item)),
        "attributes": json.dumps(item.get("attributes") or [], sort_keys=True, default=str),
    }
    encoded = json.dumps(relevant, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
