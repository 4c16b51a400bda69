from __future__ import annotations

from typing import Any, Optional


class PanelError(RuntimeError):
    """Caller-visible failure carrying an error code and HTTP status."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 500,
        *,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.data = data


__all__ = ["PanelError"]
