from datetime import datetime

from bson import ObjectId


def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: dict) -> dict:
    """
    JSON-safe copy of a Mongo document: ObjectIds and datetimes become
    strings at every depth. Internal bookkeeping fields are dropped.
    """
    if not doc:
        return doc

    return {
        k: _serialize_value(v)
        for k, v in doc.items()
        if k not in ("scan_keys", "bank_account_encrypted")
    }


def serialize_docs(docs):
    return [serialize_doc(d) for d in docs]
