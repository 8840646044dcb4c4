from fastapi import APIRouter

from rewardloop_api.api.dependencies.security import internal_api_key_dependency

from .endpoints import (
    communications,
    events,
    health,
    members,
    referrals,
    reporting,
    vouchers,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])

_protected = [internal_api_key_dependency()]
router.include_router(events.router, dependencies=_protected)
router.include_router(members.router, dependencies=_protected)
router.include_router(vouchers.router, dependencies=_protected)
router.include_router(referrals.router, dependencies=_protected)
router.include_router(communications.router, dependencies=_protected)
router.include_router(reporting.router, dependencies=_protected)
