"""
Quote Request Service

Persists "request a quote" submissions, notifies the sales inbox and backs
the admin quote endpoints (list, detail, update, delete, statistics).
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Callable, Tuple

from pymongo import ReturnDocument

from models import QuoteStatus, QuoteCreateRequest
from services.errors import RecordNotFoundError
from services.trial_store import build_list_filter

logger = logging.getLogger(__name__)

QUOTES_COLLECTION = "quotes"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_quote_id(now: Optional[datetime] = None) -> str:
    timestamp = (now or _utcnow()).strftime("%Y%m%d%H%M%S")
    unique = uuid.uuid4().hex[:6].upper()
    return f"QUOTE-{timestamp}-{unique}"


class QuoteService:

    def __init__(self, db, notifier=None, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.notifier = notifier
        self._now = clock or _utcnow

    @property
    def collection(self):
        return self.db[QUOTES_COLLECTION]

    async def create_quote(
        self,
        request: QuoteCreateRequest,
        client_info: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        client_info = client_info or {}
        now = self._now()
        quote_doc = {
            "quote_id": generate_quote_id(now),
            "company_name": request.company_name,
            "contact_name": request.contact_name,
            "phone": request.phone,
            "email": request.email,
            "company_type": request.company_type.value,
            "user_count": request.user_count,
            "requirements": request.requirements,
            "status": QuoteStatus.PENDING.value,
            "assigned_to": None,
            "notes": None,
            "quoted_price": None,
            "quoted_at": None,
            "ip_address": client_info.get("ip_address"),
            "user_agent": client_info.get("user_agent"),
            "referrer": client_info.get("referrer"),
            "created_at": now,
            "updated_at": now,
        }

        await self.collection.insert_one(quote_doc)
        quote_doc.pop("_id", None)
        logger.info(f"Quote request created: {quote_doc['quote_id']} from {request.company_name}")

        if self.notifier:
            try:
                await self.notifier.send_quote_notification(quote_doc)
            except Exception as e:
                logger.error(f"Failed to send quote notification for {quote_doc['quote_id']}: {e}")

        return quote_doc

    async def get_quote(self, quote_id: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"quote_id": quote_id}, {"_id": 0})

    async def list_quotes(
        self,
        status: Optional[str] = None,
        company_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Dict[str, Any]], int]:
        filter_query = build_list_filter(
            status,
            start_date,
            end_date,
            search,
            search_fields=("company_name", "contact_name", "phone"),
        )
        if company_type:
            filter_query["company_type"] = company_type

        skip = (page - 1) * limit
        cursor = self.collection.find(filter_query, {"_id": 0}).sort([("created_at", -1)]).skip(skip).limit(limit)
        quotes = await cursor.to_list(length=limit)
        total = await self.collection.count_documents(filter_query)
        return quotes, total

    async def update_quote(
        self,
        quote_id: str,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
        notes: Optional[str] = None,
        quoted_price: Optional[float] = None,
    ) -> Dict[str, Any]:
        now = self._now()
        update_data: Dict[str, Any] = {"updated_at": now}

        if status:
            update_data["status"] = QuoteStatus(status).value
        if assigned_to:
            update_data["assigned_to"] = assigned_to
        if notes:
            update_data["notes"] = notes
        if quoted_price is not None:
            update_data["quoted_price"] = quoted_price
            update_data["quoted_at"] = now

        quote = await self.collection.find_one_and_update(
            {"quote_id": quote_id},
            {"$set": update_data},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not quote:
            raise RecordNotFoundError("Quote", quote_id)

        logger.info(f"Quote updated: {quote_id} fields={sorted(k for k in update_data if k != 'updated_at')}")
        return quote

    async def delete_quote(self, quote_id: str) -> None:
        result = await self.collection.delete_one({"quote_id": quote_id})
        if result.deleted_count == 0:
            raise RecordNotFoundError("Quote", quote_id)
        logger.info(f"Quote deleted: {quote_id}")

    async def get_stats(self) -> Dict[str, Any]:
        now = self._now()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

        total = await self.collection.count_documents({})
        pending = await self.collection.count_documents({"status": QuoteStatus.PENDING.value})
        converted = await self.collection.count_documents({"status": QuoteStatus.CONVERTED.value})
        today = await self.collection.count_documents({"created_at": {"$gte": today_start}})

        by_company_type = await self.collection.aggregate([
            {"$group": {"_id": "$company_type", "count": {"$sum": 1}}},
        ]).to_list(length=None)

        by_month = await self.collection.aggregate([
            {
                "$group": {
                    "_id": {
                        "year": {"$year": "$created_at"},
                        "month": {"$month": "$created_at"},
                    },
                    "count": {"$sum": 1},
                }
            },
            {"$sort": {"_id.year": -1, "_id.month": -1}},
            {"$limit": 12},
        ]).to_list(length=12)

        return {
            "overview": {
                "total_quotes": total,
                "pending_quotes": pending,
                "converted_quotes": converted,
                "today_quotes": today,
                "conversion_rate": round(converted / total * 100, 2) if total > 0 else 0,
            },
            "by_company_type": [
                {"company_type": row["_id"], "count": row["count"]} for row in by_company_type
            ],
            "by_month": [
                {"year": row["_id"]["year"], "month": row["_id"]["month"], "count": row["count"]}
                for row in by_month
            ],
        }
