"""Governed generative-AI endpoint."""

from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from governor.app.api.dependencies import AIClientDep

router = APIRouter(prefix="/ai", tags=["ai"])


class GenerateRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=100_000)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_output_tokens: Optional[int] = Field(None, gt=0)


class UsageResponse(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class GenerateResponse(BaseModel):
    text: str
    model: str
    usage: UsageResponse


@router.post("/generate", response_model=GenerateResponse)
async def generate(body: GenerateRequest, client: AIClientDep) -> GenerateResponse:
    """Generate text through the upstream-governed AI client.

    Refusals and downstream failures surface through the application's
    exception handlers (429 / 503).
    """
    response = await client.generate(
        body.prompt,
        temperature=body.temperature,
        max_output_tokens=body.max_output_tokens,
    )
    return GenerateResponse(**response.to_dict())
