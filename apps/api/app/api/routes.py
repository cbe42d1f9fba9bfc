from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.crosssell import routers as crosssell_routers
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
for crosssell_router in crosssell_routers:
    router.include_router(crosssell_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | int | None]:
    return {
        "sub": user.sub,
        "user_id": user.user_id,
        "role": user.role,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if user.role not in {"admin", "senior_management"}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="metrics require an admin role")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
