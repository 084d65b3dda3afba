"""
Generic Repository Base Class
DRY foundation for async CRUD operations on MongoDB collections.
"""
from typing import Generic, TypeVar, Type, Optional, List, Dict, Any
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from bson import ObjectId
from bson.errors import InvalidId
import datetime as dt

from eventgate.coordination.mongo import datastore_errors
from eventgate.models.base import MongoBaseModel
from eventgate.utils.observability import logger

# Generic type for domain models
T = TypeVar("T", bound=MongoBaseModel)


class BaseRepository(Generic[T]):
    """
    Generic async repository for MongoDB collections.
    Provides type-safe CRUD operations for domain models.

    Driver errors surface as InfrastructureError.

    Usage:
        class DeadLetterMongoRepository(BaseRepository[DeadLetterEntry]):
            def __init__(self, database: AsyncIOMotorDatabase):
                super().__init__(database, "dead_letters", DeadLetterEntry)
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        collection_name: str,
        model_class: Type[T]
    ):
        """
        Initialize repository with database connection and model type.

        Args:
            database: Motor database instance
            collection_name: MongoDB collection name
            model_class: Pydantic model class for type safety
        """
        self.database = database
        self.collection: AsyncIOMotorCollection = database[collection_name]
        self.model_class = model_class
        self.collection_name = collection_name

    async def create(self, document: T) -> T:
        """
        Insert a new document into the collection.

        Args:
            document: Domain model instance to persist

        Returns:
            The created document with `id` populated
        """
        document.updated_at = dt.datetime.now(dt.UTC)

        doc_dict = document.model_dump(by_alias=True, exclude={"id"})

        with datastore_errors(f"insert into {self.collection_name}"):
            result = await self.collection.insert_one(doc_dict)

        logger.debug(
            f"Created document in {self.collection_name}",
            extra={"document_id": str(result.inserted_id)}
        )

        document.id = str(result.inserted_id)
        return document

    async def find_by_id(self, document_id: str) -> Optional[T]:
        """
        Retrieve a document by its MongoDB ObjectId.

        Args:
            document_id: String representation of ObjectId

        Returns:
            Domain model instance, or None if not found or the ID is malformed
        """
        object_id = self._object_id(document_id)
        if object_id is None:
            return None

        with datastore_errors(f"find in {self.collection_name}"):
            doc = await self.collection.find_one({"_id": object_id})

        if doc is None:
            return None

        return self._to_model(doc)

    async def find_many(
        self,
        filter_dict: Dict[str, Any],
        limit: int = 100,
        skip: int = 0,
        sort: Optional[List[tuple]] = None
    ) -> List[T]:
        """
        Retrieve multiple documents matching the filter.

        Args:
            filter_dict: MongoDB query filter
            limit: Maximum number of documents to return
            skip: Number of documents to skip (pagination)
            sort: List of (field, direction) tuples for sorting

        Returns:
            List of domain model instances
        """
        cursor = self.collection.find(filter_dict)

        if sort:
            cursor = cursor.sort(sort)

        cursor = cursor.skip(skip).limit(limit)

        with datastore_errors(f"query {self.collection_name}"):
            docs = await cursor.to_list(length=limit)

        return [self._to_model(doc) for doc in docs]

    @staticmethod
    def _object_id(document_id: str) -> Optional[ObjectId]:
        try:
            return ObjectId(document_id)
        except (InvalidId, TypeError):
            return None

    def _to_model(self, doc: Dict[str, Any]) -> T:
        """
        Convert MongoDB document to Pydantic model instance.

        Args:
            doc: Raw MongoDB document dict

        Returns:
            Domain model instance
        """
        if "_id" in doc:
            doc["_id"] = str(doc["_id"])

        model_fields = self.model_class.model_fields.keys()

        cleaned_doc = {
            k: v for k, v in doc.items()
            if k in model_fields or k == "_id"
        }

        return self.model_class.model_validate(cleaned_doc)
