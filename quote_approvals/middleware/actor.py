from typing import Optional

from fastapi import Header, HTTPException, status
import structlog

logger = structlog.get_logger()


async def get_current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> dict:
    """
    FastAPI dependency: the acting user as asserted by the upstream auth gateway.
    Authentication itself happens outside this service.
    """
    if not x_actor_id:
        logger.warning("actor_header_missing")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": {
                    "code": "ACTOR_REQUIRED",
                    "message": "X-Actor-Id header is required",
                }
            },
        )
    return {"user_id": x_actor_id, "role": x_actor_role}
