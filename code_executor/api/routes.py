from __future__ import annotations

from fastapi import APIRouter, status

from code_executor.models.schemas import ExecuteRequest, ExecuteResponse, LanguagesResponse
from code_executor.services.executor import ExecutionRequest, ExecutionResult, get_engine


router = APIRouter()


@router.post("/execute", response_model=ExecuteResponse, status_code=status.HTTP_200_OK)
async def execute(req: ExecuteRequest) -> ExecuteResponse:
    """Run the submitted program and report its captured output.

    Engine-level failures (validation, busy, compile, runtime, limits) are
    returned with ``failed=true`` rather than as HTTP errors. Authorization is
    left to whatever sits in front of this service.
    """
    limits = req.limits.model_dump(exclude_none=True) if req.limits else None
    result: ExecutionResult = await get_engine().execute(
        ExecutionRequest(source=req.code, language=req.language, stdin=req.stdin, limits=limits)
    )

    return ExecuteResponse(
        stdout=result.stdout,
        stderr=result.stderr,
        failed=result.failed,
        error_kind=result.error_kind,
        exit_code=result.exit_code,
        duration_ms=result.duration_ms,
    )


@router.get("/languages", response_model=LanguagesResponse)
def languages() -> LanguagesResponse:
    return LanguagesResponse(languages=get_engine().registry.languages())
