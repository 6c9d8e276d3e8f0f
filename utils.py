import math
import re
from datetime import datetime, timezone
from typing import Any, Dict

from bson import ObjectId
from fastapi import HTTPException


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    # Convert ObjectId in nested fields if any
    for k, v in list(doc.items()):
        doc[k] = _plain(v)
    return doc


def parse_object_id(value: str, kind: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail=f"Invalid {kind} id")
    return ObjectId(value)


def icontains(term: str) -> Dict[str, str]:
    """Case-insensitive substring match on a user supplied term."""
    return {"$regex": re.escape(term), "$options": "i"}


def paginate(total: int, page: int, limit: int) -> Dict[str, Any]:
    return {
        "current_page": page,
        "total_pages": math.ceil(total / limit) if limit else 0,
        "total": total,
        "has_next": page * limit < total,
        "has_prev": page > 1,
    }
