"""
Quote Request API Routes

Public "request a quote" form plus the admin endpoints the sales team uses
to work the queue.
"""
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from dependencies import get_quote_service
from middleware import admin_route_guard, get_client_info, intake_rate_limit
from models import QuoteStatus, CompanyType, QuoteCreateRequest, QuoteUpdateRequest
from services.errors import RecordNotFoundError
from services.quote_service import QuoteService

router = APIRouter(prefix="/api/quotes", tags=["quotes"])


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(intake_rate_limit)])
async def request_quote(
    body: QuoteCreateRequest,
    request: Request,
    quotes: QuoteService = Depends(get_quote_service),
):
    """Submit a quote request. Sales is notified by email."""
    quote = await quotes.create_quote(body, client_info=get_client_info(request))
    return {
        "success": True,
        "message": "Quote request received. Our sales team will contact you shortly.",
        "data": {
            "quote_id": quote["quote_id"],
            "company_name": quote["company_name"],
            "contact_name": quote["contact_name"],
            "created_at": quote["created_at"],
        },
    }


@router.get("")
async def list_quotes(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[QuoteStatus] = None,
    company_type: Optional[CompanyType] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    search: Optional[str] = Query(None, max_length=100),
    current_user: dict = Depends(admin_route_guard),
    quotes: QuoteService = Depends(get_quote_service),
):
    items, total = await quotes.list_quotes(
        status=status.value if status else None,
        company_type=company_type.value if company_type else None,
        start_date=start_date,
        end_date=end_date,
        search=search,
        page=page,
        limit=limit,
    )
    return {
        "success": True,
        "data": {
            "quotes": items,
            "pagination": {
                "current": page,
                "total": math.ceil(total / limit),
                "count": len(items),
                "total_records": total,
            },
        },
    }


@router.get("/stats/overview")
async def get_quote_stats(
    current_user: dict = Depends(admin_route_guard),
    quotes: QuoteService = Depends(get_quote_service),
):
    return {"success": True, "data": await quotes.get_stats()}


@router.get("/{quote_id}")
async def get_quote(
    quote_id: str,
    current_user: dict = Depends(admin_route_guard),
    quotes: QuoteService = Depends(get_quote_service),
):
    quote = await quotes.get_quote(quote_id)
    if not quote:
        raise RecordNotFoundError("Quote", quote_id)
    return {"success": True, "data": quote}


@router.put("/{quote_id}")
async def update_quote(
    quote_id: str,
    body: QuoteUpdateRequest,
    current_user: dict = Depends(admin_route_guard),
    quotes: QuoteService = Depends(get_quote_service),
):
    """Update status, assignee, notes or price. Setting a price stamps quoted_at."""
    quote = await quotes.update_quote(
        quote_id,
        status=body.status.value if body.status else None,
        assigned_to=body.assigned_to,
        notes=body.notes,
        quoted_price=body.quoted_price,
    )
    return {"success": True, "message": "Quote updated", "data": quote}


@router.delete("/{quote_id}")
async def delete_quote(
    quote_id: str,
    current_user: dict = Depends(admin_route_guard),
    quotes: QuoteService = Depends(get_quote_service),
):
    await quotes.delete_quote(quote_id)
    return {"success": True, "message": "Quote deleted"}
