from __future__ import annotations

from pydantic import BaseModel, Field, StrictInt, StrictStr

from code_executor.services.executor import ErrorKind


class Limits(BaseModel):
    timeout_ms: StrictInt | None = Field(None, description="Wall-clock limit; clamped to the server range.")
    memory_mb: StrictInt | None = Field(None, description="Memory limit; clamped to the server range.")


class ExecuteRequest(BaseModel):
    code: StrictStr = Field(..., description="Program source to execute.")
    language: StrictStr = Field(..., description="python, javascript/js, java or cpp/c++.")
    stdin: StrictStr | None = Field(None, description="Optional stdin passed to the program.")
    limits: Limits | None = None


class ExecuteResponse(BaseModel):
    stdout: StrictStr
    stderr: StrictStr
    failed: bool
    error_kind: ErrorKind | None = None
    exit_code: int | None = None
    duration_ms: StrictInt = 0


class LanguagesResponse(BaseModel):
    languages: dict[str, list[str]]
