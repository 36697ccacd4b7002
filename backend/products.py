from datetime import datetime
from typing import Dict, List, Optional
from urllib.parse import quote

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING, ReturnDocument

from .errors import BadRequestError
from .utils import epoch_millis, utc_now


def normalize_product_id(value) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise BadRequestError("Invalid product identifier.")


def serialize_product_document(document) -> Optional[Dict[str, object]]:
    if not document:
        return None
    serialized = {}
    for key, value in document.items():
        if key == "_id":
            serialized["id"] = str(value)
        elif isinstance(value, datetime):
            serialized[key] = value.isoformat()
        elif isinstance(value, ObjectId):
            serialized[key] = str(value)
        else:
            serialized[key] = value
    return serialized


class MongoProductRepository:
    """Product CRUD over the ``products`` collection. Returns serialized dicts."""

    def __init__(self, collection):
        self.collection = collection

    def list_products(self) -> List[Dict[str, object]]:
        cursor = self.collection.find({}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        return [serialize_product_document(document) for document in cursor]

    def get_product(self, product_id) -> Optional[Dict[str, object]]:
        document = self.collection.find_one({"_id": normalize_product_id(product_id)})
        return serialize_product_document(document)

    def create_product(self, data: Dict[str, object]) -> Dict[str, object]:
        document = {key: value for key, value in (data or {}).items() if key not in ("_id", "id")}
        document.setdefault("created_at", utc_now())
        insert_result = self.collection.insert_one(document)
        document["_id"] = insert_result.inserted_id
        return serialize_product_document(document)

    def update_product(self, product_id, data: Dict[str, object]) -> Optional[Dict[str, object]]:
        changes = {key: value for key, value in (data or {}).items() if key not in ("_id", "id")}
        object_id = normalize_product_id(product_id)
        if not changes:
            return self.get_product(object_id)
        document = self.collection.find_one_and_update(
            {"_id": object_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        return serialize_product_document(document)

    def delete_product(self, product_id) -> bool:
        result = self.collection.delete_one({"_id": normalize_product_id(product_id)})
        return result.deleted_count > 0


def build_image_url(filename: Optional[str], base_url: str) -> Optional[str]:
    if not filename:
        return None
    sanitized = str(filename).strip()
    if not sanitized:
        return None
    if sanitized.startswith(("http://", "https://")):
        return sanitized
    return f"{base_url.rstrip('/')}/{quote(sanitized)}?t={epoch_millis()}"


def with_image_urls(product: Dict[str, object], base_url: str) -> Dict[str, object]:
    extra_images = product.get("extraimages")
    return {
        **product,
        "homepageImage": build_image_url(product.get("homepageimage"), base_url),
        "extraImages": [
            url
            for url in (
                build_image_url(filename, base_url)
                for filename in (extra_images if isinstance(extra_images, list) else [])
            )
            if url
        ],
    }
