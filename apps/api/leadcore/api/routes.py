from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from leadcore.attribution.api import router as attribution_router
from leadcore.core.auth import AuthUser, get_current_user
from leadcore.core.config import get_settings
from leadcore.leads.api import branches_router
from leadcore.leads.api import router as ingestion_router
from leadcore.metrics import generate_metrics_payload, metrics_content_type
from leadcore.scoring.api import router as scoring_router
from leadcore.tracking.api import router as tracking_router

router = APIRouter()
router.include_router(ingestion_router)
router.include_router(branches_router)
router.include_router(scoring_router)
router.include_router(tracking_router)
router.include_router(attribution_router)


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
