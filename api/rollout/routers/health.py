import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/healthz")
def health(request: Request):
    rollout = request.app.state.rollout
    try:
        count = len(rollout.features())
    except Exception as exc:
        logger.warning("store unavailable: %s", exc)
        return JSONResponse(status_code=503, content={"status": "unavailable", "detail": str(exc)})
    return {"status": "ok", "features": count}
