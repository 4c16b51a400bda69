from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class PingResponse(BaseModel):
    message: str
    server_time: datetime
    version: str


class AddonInstallRequest(BaseModel):
    identifier: Optional[str] = Field(None, max_length=255)
    version: Optional[str] = Field(None, max_length=64)


class AddonUrlInstallRequest(BaseModel):
    url: Optional[str] = Field(None, max_length=2048)


class PluginSettingUpdateRequest(BaseModel):
    key: Optional[str] = Field(None, max_length=255)
    value: Optional[Any] = None


class PluginSettingDeleteRequest(BaseModel):
    key: Optional[str] = Field(None, max_length=255)


class SnapshotPasswordRequest(BaseModel):
    password: Optional[str] = None


class SnapshotRestoreRequest(BaseModel):
    confirm: Any = None
    password: Optional[str] = None
