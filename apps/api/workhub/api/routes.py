from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from workhub.core.auth import MANAGE_PERMISSION, METRICS_PERMISSION, AuthUser, get_current_user, require_permission
from workhub.core.config import get_settings
from workhub.custom_fields.api import catalog_router as custom_field_catalog_router
from workhub.custom_fields.api import router as custom_fields_router
from workhub.custom_fields.service import custom_field_service
from workhub.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(custom_field_catalog_router)
router.include_router(custom_fields_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str | int | bool]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "field_types": len(custom_field_service.field_types()),
        "usage_summary_enabled": settings.usage_summary_enabled,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | bool | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "can_manage_custom_fields": user.can(MANAGE_PERMISSION),
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    require_permission(user, METRICS_PERMISSION)
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
