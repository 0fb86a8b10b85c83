# teamhub/api/v1/businesses.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from teamhub.api.deps.auth import get_current_user
from teamhub.api.deps.business import get_audit_sink
from teamhub.db.session import get_db
from teamhub.models.user import User
from teamhub.schemas.business import BusinessCreate, BusinessOut
from teamhub.services.audit import AuditSink
from teamhub.services.businesses import create_business, list_my_businesses

router = APIRouter(prefix="/businesses", tags=["businesses"])


@router.post("", response_model=BusinessOut, status_code=status.HTTP_201_CREATED)
async def create_business_route(
    payload: BusinessCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    audit: AuditSink = Depends(get_audit_sink),
):
    """
    Create a business; the caller becomes its first active owner.
    """
    try:
        return await create_business(
            db,
            user,
            payload.name,
            slug=payload.slug,
            organization_id=payload.organization_id,
            audit=audit,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.get("", response_model=List[BusinessOut])
async def list_my_businesses_route(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    Businesses the current user is an active member of.
    """
    return await list_my_businesses(db, user)
