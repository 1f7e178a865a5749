"""Base model shared by all stackpilot records."""

from typing import Any

from pydantic import BaseModel


class StackModel(BaseModel):
    """Base model with common stackpilot settings."""

    def model_dump(self, **kwargs) -> dict[str, Any]:
        """Convert to dict with exclude_none by default."""
        kwargs.setdefault("exclude_none", True)
        return super().model_dump(**kwargs)
