"""
api/routes/v1/admin.py -- Administrator-only endpoints.

Routes:
  GET /api/v1/admin/stats  -- user counts (role "admin" required)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import StatsData, envelope
from auth.dependencies import require_role
from auth.models import Identity
from auth.store import UserStore

router = APIRouter()


@router.get("/admin/stats")
def stats(request: Request, identity: Identity = Depends(require_role("admin"))) -> dict:
    user_store: UserStore = request.app.state.user_store
    return envelope(
        StatsData(
            total_users=user_store.count_users(),
            admin_count=user_store.count_users_with_role("admin"),
        )
    )
