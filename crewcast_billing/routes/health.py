"""
Health endpoint
"""

import logging

from fastapi import APIRouter

from crewcast_billing.services.idempotency import get_idempotency_guard

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", tags=["health"])
async def health_check():
    """Liveness probe. Does not touch Supabase or Stripe."""
    guard = get_idempotency_guard()
    return {"status": "ok", "idempotency_backend": guard.backend_name}
