from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from opportunity_automation.core.auth import AuthUser, get_current_user
from opportunity_automation.core.config import get_settings
from opportunity_automation.crm.api import opportunities_router, router as crm_reference_router
from opportunity_automation.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(crm_reference_router)
router.include_router(opportunities_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
