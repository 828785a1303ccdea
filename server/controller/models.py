# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Rosalia Labs LLC

from pydantic import BaseModel, ConfigDict
from typing import Any, Optional


class DeviceAccessRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    macAddress: Optional[Any] = None


class DeviceAccessResponse(BaseModel):
    message: str
    macAddress: str


class DeviceStatusResponse(BaseModel):
    macAddress: str
    isAllowed: bool


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    error: str


class Principal(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Optional[str] = None
    subject: Optional[str] = None
    claims: dict = {}
