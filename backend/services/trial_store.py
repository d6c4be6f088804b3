"""
Trial Record Store - motor-backed access to the `trials` collection.

All reads project out Mongo's _id; records are addressed by trial_id.
The store holds no state besides the database handle it was built with.
"""
import logging
import re
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

from pymongo import ReturnDocument

from models import TrialStatus

logger = logging.getLogger(__name__)

TRIALS_COLLECTION = "trials"

_NO_ID = {"_id": 0}
MS_PER_DAY = 24 * 60 * 60 * 1000


def overdue_filter(now: datetime) -> Dict[str, Any]:
    """Active trials whose end date has passed."""
    return {
        "status": TrialStatus.ACTIVE.value,
        "trial_end_date": {"$lt": now},
    }


def expiring_filter(now: datetime, until: datetime) -> Dict[str, Any]:
    """Active trials ending inside [now, until]."""
    return {
        "status": TrialStatus.ACTIVE.value,
        "trial_end_date": {"$gte": now, "$lte": until},
    }


def build_list_filter(
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    search: Optional[str] = None,
    search_fields: Tuple[str, ...] = ("company_name", "contact_name", "phone", "email"),
) -> Dict[str, Any]:
    """Admin listing filter shared by trials and quotes."""
    filter_query: Dict[str, Any] = {}

    if status:
        filter_query["status"] = status

    if start_date or end_date:
        filter_query["created_at"] = {}
        if start_date:
            filter_query["created_at"]["$gte"] = start_date
        if end_date:
            filter_query["created_at"]["$lte"] = end_date

    if search:
        pattern = re.escape(search)
        filter_query["$or"] = [
            {field: {"$regex": pattern, "$options": "i"}} for field in search_fields
        ]

    return filter_query


class TrialStore:
    """Persistent collection of trial records."""

    def __init__(self, db):
        self.db = db

    @property
    def collection(self):
        return self.db[TRIALS_COLLECTION]

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(self, trial_id: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"trial_id": trial_id}, _NO_ID)

    async def get_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one(
            {"trial_account.username": username},
            _NO_ID,
        )

    async def username_exists(self, username: str) -> bool:
        existing = await self.collection.find_one(
            {"trial_account.username": username},
            {"_id": 1},
        )
        return existing is not None

    async def find_by_identity(self, email: str, phone: str) -> Optional[Dict[str, Any]]:
        """Existing trial sharing the email or the phone number."""
        return await self.collection.find_one(
            {"$or": [{"email": email.lower()}, {"phone": phone}]},
            _NO_ID,
        )

    async def find_expiring(self, now: datetime, until: datetime) -> List[Dict[str, Any]]:
        cursor = self.collection.find(expiring_filter(now, until), _NO_ID).sort("trial_end_date", 1)
        return await cursor.to_list(length=None)

    async def list(
        self,
        filter_query: Dict[str, Any],
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Dict[str, Any]], int]:
        skip = (page - 1) * limit
        cursor = self.collection.find(filter_query, _NO_ID).sort([("created_at", -1)]).skip(skip).limit(limit)
        trials = await cursor.to_list(length=limit)
        total = await self.collection.count_documents(filter_query)
        return trials, total

    async def count(self, filter_query: Optional[Dict[str, Any]] = None) -> int:
        return await self.collection.count_documents(filter_query or {})

    async def aggregate_active_usage(self) -> Optional[Dict[str, Any]]:
        pipeline = [
            {"$match": {"status": TrialStatus.ACTIVE.value}},
            {
                "$group": {
                    "_id": None,
                    "avg_login_count": {"$avg": "$login_count"},
                    "total_logins": {"$sum": "$login_count"},
                    "total_documents": {"$sum": "$usage_stats.documents_processed"},
                    "total_approvals": {"$sum": "$usage_stats.approval_requests"},
                }
            },
        ]
        results = await self.collection.aggregate(pipeline).to_list(length=1)
        if not results:
            return None
        usage = results[0]
        usage.pop("_id", None)
        return usage

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def insert(self, trial_doc: Dict[str, Any]) -> Dict[str, Any]:
        await self.collection.insert_one(trial_doc)
        # insert_one adds _id to the dict in place
        trial_doc.pop("_id", None)
        return trial_doc

    async def update_fields(self, trial_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """$set the given fields and return the updated record (None if missing)."""
        return await self.collection.find_one_and_update(
            {"trial_id": trial_id},
            {"$set": fields},
            projection=_NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    async def add_days_to_end(self, trial_id: str, days: int, now: datetime) -> Optional[Dict[str, Any]]:
        """
        Push trial_end_date forward by whole days server-side. The pipeline
        update adds to the stored value, so concurrent extensions accumulate.
        """
        return await self.collection.find_one_and_update(
            {"trial_id": trial_id},
            [{"$set": {
                "trial_end_date": {"$add": ["$trial_end_date", days * MS_PER_DAY]},
                "updated_at": now,
            }}],
            projection=_NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    async def increment_login(self, trial_id: str, now: datetime) -> Optional[Dict[str, Any]]:
        """
        Count a login only while the trial is active and not past its end
        date; the guard lives in the filter so a concurrent sweep cannot
        interleave. Returns None when the guard does not match.
        """
        return await self.collection.find_one_and_update(
            {
                "trial_id": trial_id,
                "status": TrialStatus.ACTIVE.value,
                "trial_end_date": {"$gte": now},
            },
            {
                "$inc": {"login_count": 1},
                "$set": {"last_login_at": now, "updated_at": now},
            },
            projection=_NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    async def push_follow_up(self, trial_id: str, entry: Dict[str, Any], now: datetime) -> bool:
        result = await self.collection.update_one(
            {"trial_id": trial_id},
            {
                "$push": {"follow_ups": entry},
                "$set": {"updated_at": now},
            },
        )
        return result.matched_count > 0

    async def expire_overdue(self, now: datetime) -> int:
        """Single bulk update active → expired; returns modified count."""
        result = await self.collection.update_many(
            overdue_filter(now),
            {"$set": {"status": TrialStatus.EXPIRED.value, "updated_at": now}},
        )
        return result.modified_count
