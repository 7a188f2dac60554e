# collector/db.py
import os

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB = os.getenv("MONGO_DB", "bestsellers")

CURRENT_CACHE_ID = "current"

_client = None
_db = None


def get_client():
    """Initialize and return the MongoDB AsyncIOMotorClient singleton."""
    global _client, _db
    if _client is None:
        _client = AsyncIOMotorClient(MONGO_URI)
        _db = _client[MONGO_DB]
    return _client


def get_db():
    """Return the MongoDB database instance, initializing if needed."""
    global _db
    if _db is None:
        get_client()
    return _db


async def insert_snapshot(snapshot_doc):
    """Append a raw snapshot document; snapshots are never updated."""
    db = get_db()
    res = await db.raw_snapshots.insert_one(snapshot_doc)
    return str(res.inserted_id)


async def find_snapshots(source, limit):
    """Return the newest `limit` snapshots of a source, newest first."""
    db = get_db()
    cursor = db.raw_snapshots.find({"source": source}).sort([("fetchedAt", -1)])
    return await cursor.limit(limit).to_list(length=limit)


async def prune_snapshots(source, keep):
    """
    Delete all but the newest `keep` snapshots of a source.
    Returns the number of deleted documents.
    """
    db = get_db()
    cursor = db.raw_snapshots.find({"source": source}).sort([("fetchedAt", -1)])
    docs = await cursor.skip(keep).to_list(length=None)
    if not docs:
        return 0
    res = await db.raw_snapshots.delete_many({"_id": {"$in": [d["_id"] for d in docs]}})
    return res.deleted_count


async def save_run(run_doc):
    """Insert or replace a collection run document keyed by its runId."""
    db = get_db()
    await db.collection_runs.update_one(
        {"_id": run_doc["runId"]}, {"$set": run_doc}, upsert=True
    )


async def find_runs(limit):
    """Most recent runs first."""
    db = get_db()
    cursor = db.collection_runs.find({}).sort([("startedAt", -1)])
    return await cursor.limit(limit).to_list(length=limit)


async def find_run(run_id):
    db = get_db()
    return await db.collection_runs.find_one({"_id": run_id})


async def save_cache_entry(entry_doc, history_size):
    """
    Replace the current dataset document and append it to the bounded history.

    The current entry is a single document so a reader loading it never sees
    records from two different versions.
    """
    db = get_db()
    await db.dataset_cache.update_one(
        {"_id": CURRENT_CACHE_ID}, {"$set": entry_doc}, upsert=True
    )
    await db.dataset_history.update_one(
        {"_id": entry_doc["datasetVersion"]}, {"$set": entry_doc}, upsert=True
    )
    cursor = db.dataset_history.find({}).sort([("datasetVersion", -1)])
    old = await cursor.skip(history_size).to_list(length=None)
    if old:
        await db.dataset_history.delete_many({"_id": {"$in": [d["_id"] for d in old]}})


async def load_cache_entry():
    db = get_db()
    return await db.dataset_cache.find_one({"_id": CURRENT_CACHE_ID})


async def find_cache_history(limit):
    db = get_db()
    cursor = db.dataset_history.find({}).sort([("datasetVersion", -1)])
    return await cursor.limit(limit).to_list(length=limit)


async def find_cache_version():
    """datasetVersion of the current dataset document, or None when nothing was committed."""
    db = get_db()
    doc = await db.dataset_cache.find_one({"_id": CURRENT_CACHE_ID}, {"datasetVersion": 1})
    return doc.get("datasetVersion") if doc else None
