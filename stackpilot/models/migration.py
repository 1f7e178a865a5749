"""Migration plan, action and result models."""

from datetime import datetime

from pydantic import ConfigDict, Field

from .base import StackModel
from .enums import ActionType, MigrationStrategy
from .service import ServiceRecord


class MigrationAction(StackModel):
    """A single numbered step of a migration plan."""

    model_config = ConfigDict(frozen=True)

    order: int = Field(ge=1)
    type: ActionType
    target: str
    description: str
    reversible: bool = False


class MigrationPlan(StackModel):
    """How to handle existing installations, computed from one detection pass."""

    strategy: MigrationStrategy = MigrationStrategy.FRESH
    existing_services: list[ServiceRecord] = Field(default_factory=list)
    actions: list[MigrationAction] = Field(default_factory=list)
    port_mappings: dict[str, int] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    requires_confirm: bool = False

    def summary(self) -> str:
        """Human-readable summary of the plan."""
        lines = ["Migration Plan Summary", "======================", ""]
        lines.append(f"Strategy: {self.strategy.display_name}")
        lines.append("")

        if self.existing_services:
            lines.append("Detected Services:")
            for svc in self.existing_services:
                status = svc.state.value
                if svc.is_managed:
                    status += " (managed)"
                lines.append(f"  - {svc.name} [{status}]")
            lines.append("")

        if self.actions:
            lines.append("Planned Actions:")
            for action in self.actions:
                tag = " [reversible]" if action.reversible else ""
                lines.append(f"  {action.order}. {action.description}{tag}")
            lines.append("")

        lines.append("Port Configuration:")
        for service, port in self.port_mappings.items():
            lines.append(f"  - {service}: {port}")
        lines.append("")

        if self.warnings:
            lines.append("Warnings:")
            for warning in self.warnings:
                lines.append(f"  ! {warning}")

        return "\n".join(lines) + "\n"


class ActionResult(StackModel):
    """Outcome of executing one migration action."""

    model_config = ConfigDict(frozen=True)

    action: MigrationAction
    success: bool = False
    output: str | None = None
    error: str | None = None
    duration: float = Field(default=0.0, description="Seconds spent on the action")


class MigrationResult(StackModel):
    """Outcome of executing a migration plan."""

    success: bool = False
    completed_at: datetime
    actions: list[ActionResult] = Field(default_factory=list)
    backup_path: str | None = None
    error: str | None = None
