from fastapi import APIRouter, Request, status

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", status_code=status.HTTP_200_OK)
async def healthcheck(request: Request) -> dict[str, str]:
    """Return the service status and whether the retry worker is running."""

    scheduler = getattr(request.app.state, "retry_scheduler", None)
    worker = "running" if scheduler is not None and scheduler.running else "stopped"
    return {"status": "ok", "retryWorker": worker}
