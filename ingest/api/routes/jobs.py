import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ingest.api.dependencies import get_job_context
from ingest.api.security import require_api_key
from ingest.jobs.executor import JobContext, JobInputError, execute_job
from ingest.jobs.run_source import SourceHealthCheckFailedError, SourceUnavailableError
from ingest.schemas.jobs import JobKind, JobRequest, JobResultOut
from ingest.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from ingest.sources.contract import SourceContractError
from ingest.sources.registry import UnknownSourceError

router = APIRouter(dependencies=[Depends(require_api_key)])
logger = logging.getLogger(__name__)


@router.get("/sources", response_model=JobResultOut)
async def list_sources(context: JobContext = Depends(get_job_context)) -> JobResultOut:
    outcome = await execute_job(JobKind.LIST_SOURCES.value, None, context=context)
    return JobResultOut(**outcome)


@router.post("/{kind}", response_model=JobResultOut)
async def run_job(
    kind: JobKind,
    payload: JobRequest | None = None,
    context: JobContext = Depends(get_job_context),
) -> JobResultOut:
    inputs = payload.inputs if payload is not None else {}
    try:
        outcome = await execute_job(kind.value, inputs, context=context)
    except (UnknownSourceError, RepositoryNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (RepositoryConflictError, SourceUnavailableError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (JobInputError, RepositoryValidationError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except (SourceContractError, SourceHealthCheckFailedError) as exc:
        logger.warning("job failed on source output kind=%s error=%s", kind.value, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobResultOut(**outcome)
