"""Lifecycle operation results."""

from datetime import datetime

from pydantic import Field

from .base import StackModel
from .service import ServiceStatus


class StartupResult(StackModel):
    """Result of starting the stack."""

    success: bool = False
    started_at: datetime
    duration: float = 0.0
    services: list[ServiceStatus] = Field(default_factory=list)
    access_urls: dict[str, str] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ShutdownResult(StackModel):
    """Result of stopping the stack."""

    success: bool = False
    stopped_at: datetime
    duration: float = 0.0
    services: list[ServiceStatus] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
