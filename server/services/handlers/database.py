"""Document store node handlers - dbFind, dbInsert, dbUpdate, dbDelete."""

from typing import Dict, Any, Optional, TYPE_CHECKING

import bcrypt

from core.logging import get_logger
from services.errors import HandlerError
from services.execution.models import ExecutionContext

if TYPE_CHECKING:
    from core.database import DocumentStore

logger = get_logger(__name__)


def _collection(fields: Dict[str, Any]) -> str:
    collection = fields.get("collection")
    if not isinstance(collection, str) or not collection:
        raise HandlerError(f"Invalid collection name: {collection!r}")
    return collection


def _filters(fields: Dict[str, Any]) -> Dict[str, Any]:
    filters = fields.get("filters", fields.get("filter")) or {}
    if not isinstance(filters, dict):
        raise HandlerError(f"Filters must resolve to an object, got {type(filters).__name__}")
    return filters


def _data(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Resolved data, unwrapping a {"data": {...}} envelope."""
    data = fields.get("data") or {}
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        data = data["data"]
    if not isinstance(data, dict):
        raise HandlerError(f"Data must resolve to an object, got {type(data).__name__}")
    return dict(data)


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    salt = bcrypt.gensalt(rounds=10)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


async def handle_db_find(fields: Dict[str, Any], context: ExecutionContext,
                         store: "DocumentStore") -> Optional[Any]:
    """Find one document, or every document when findType is "many"."""
    collection = _collection(fields)
    filters = _filters(fields)

    if fields.get("findType") == "many":
        result: Any = await store.find_many(collection, filters)
        count = len(result)
    else:
        result = await store.find_one(collection, filters)
        count = 0 if result is None else 1

    logger.debug("DB find completed", execution_id=context.execution_id,
                 collection=collection, result_count=count)
    return result


async def handle_db_insert(fields: Dict[str, Any], context: ExecutionContext,
                           store: "DocumentStore") -> Dict[str, Any]:
    """Insert a document. A `password` value is stored as a bcrypt hash."""
    collection = _collection(fields)
    data = _data(fields)

    if data.get("password"):
        data["password"] = hash_password(str(data["password"]))

    created = await store.insert(collection, data)
    logger.debug("DB insert completed", execution_id=context.execution_id,
                 collection=collection, document_id=created.get("_id"))
    return created


async def handle_db_update(fields: Dict[str, Any], context: ExecutionContext,
                           store: "DocumentStore") -> Optional[Dict[str, Any]]:
    """Set data on the first document matching filters; None when nothing matched."""
    collection = _collection(fields)
    filters = _filters(fields)
    data = _data(fields)

    updated = await store.update_one(collection, filters, data)
    logger.debug("DB update completed", execution_id=context.execution_id,
                 collection=collection, document_found=updated is not None)
    return updated


async def handle_db_delete(fields: Dict[str, Any], context: ExecutionContext,
                           store: "DocumentStore") -> Dict[str, Any]:
    """Delete the first matching document, or all of them when findType is "many"."""
    collection = _collection(fields)
    filters = _filters(fields)
    many = fields.get("findType") == "many"

    if many and not filters:
        raise HandlerError("Refusing to delete every document without filters",
                           details={"collection": collection})

    deleted = await store.delete(collection, filters, many=many)
    logger.debug("DB delete completed", execution_id=context.execution_id,
                 collection=collection, deleted_count=deleted)
    return {"deleted_count": deleted}
