from fastapi import APIRouter, Depends, HTTPException, status

from audit_queue.core.config import Settings, get_settings
from audit_queue.core.security import require_queue_secret
from audit_queue.schemas.queue import ProcessQueueOut
from audit_queue.services.repository import RepositoryError, RepositoryUnavailableError, get_repository
from audit_queue.worker import Pipeline, build_pipeline, run_invocation

router = APIRouter()


def get_pipeline(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> Pipeline:
    return build_pipeline(settings, repository)


@router.api_route("/process-queue", methods=["GET", "POST"], response_model=ProcessQueueOut, response_model_exclude_none=True)
async def process_queue(
    _: None = Depends(require_queue_secret),
    repository=Depends(get_repository),
    pipeline: Pipeline = Depends(get_pipeline),
) -> ProcessQueueOut:
    try:
        return await run_invocation(pipeline, repository)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
