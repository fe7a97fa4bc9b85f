from fastapi import APIRouter, Request
from pydantic import BaseModel

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    strategy: str
    store: str


class UsageResponse(BaseModel):
    client: str
    limit: int
    used: int


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    limiter = request.app.state.limiter
    return HealthResponse(
        status="healthy",
        strategy=limiter.config.strategy.value,
        store=type(limiter.store).__name__,
    )


@router.get("/")
async def root(request: Request):
    return {
        "service": request.app.title,
        "message": "Rate limiting service is running",
    }


@router.get("/test")
async def test_endpoint(request: Request):
    return {
        "message": "Request allowed",
        "client": request.client.host if request.client else "unknown",
    }


@router.get("/usage", response_model=UsageResponse)
async def usage(request: Request):
    limiter = request.app.state.limiter
    client = request.client.host if request.client else "unknown"
    return UsageResponse(
        client=client,
        limit=limiter.config.limit,
        used=await limiter.usage(client),
    )
