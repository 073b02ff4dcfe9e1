"""
Database connection utilities for MongoDB.
Provides the sync (PyMongo) client used by the durable session backend.
"""

import logging

import pymongo

from fairlens import config

logger = logging.getLogger(__name__)

_mongo_client = None


def get_mongo_uri() -> str:
    """Get MongoDB connection URI from environment or use default."""
    return config.MONGO_URI


def get_mongo_client():
    """Get sync MongoDB client (cached singleton).

    Returns:
        pymongo.MongoClient or None: MongoDB client if connection succeeds
    """
    global _mongo_client

    if _mongo_client is not None:
        return _mongo_client

    try:
        client = pymongo.MongoClient(get_mongo_uri(), serverSelectionTimeoutMS=2000)
        # Check connection
        client.server_info()
        _mongo_client = client
        return client
    except Exception as e:
        logger.warning("MongoDB connection failed: %s", e)
        return None


def get_mongo_collection(collection_name: str):
    """Get a specific collection from the FairLens database.

    Args:
        collection_name: Name of the collection to retrieve

    Returns:
        Collection or None: The requested collection if client is available
    """
    client = get_mongo_client()
    if client:
        db = client[config.MONGO_DB_NAME]
        return db[collection_name]
    return None


def get_sessions_collection():
    """Get the collection holding session snapshots."""
    return get_mongo_collection("sessions")
