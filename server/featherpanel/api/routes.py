from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter

from featherpanel.core.settings import get_settings
from featherpanel.schemas import PingResponse

router = APIRouter(tags=["health"])


@router.get("/ping", response_model=PingResponse)
def ping():
    return PingResponse(
        message="pong",
        server_time=datetime.now(timezone.utc),
        version=get_settings().panel_version,
    )
