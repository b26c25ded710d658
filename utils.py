import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from bson import ObjectId


def as_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def id_variants(value) -> List[Any]:
    """String and ObjectId forms of an id, for fields stored either way."""
    variants: List[Any] = [str(value)]
    oid = as_object_id(value)
    if oid is not None:
        variants.append(oid)
    return variants


def id_filter(value) -> Dict[str, Any]:
    oid = as_object_id(value)
    return {"_id": oid if oid is not None else value}


def serialize_doc(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
        elif isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def as_number(value, default: float = 0) -> float:
    """Numbers pass through, numeric strings are parsed, anything else is the default."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def round_half_up(value, places: int) -> float:
    quantum = Decimal(1).scaleb(-places)
    try:
        return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return 0.0
