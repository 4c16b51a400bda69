"""Uniform JSON envelope for every admin response."""

from __future__ import annotations

from typing import Any, Optional

from fastapi.responses import JSONResponse

from featherpanel.core.errors import PanelError


def success(data: Any = None, message: str = "OK", status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": True, "message": message, "data": data, "status": status_code},
    )


def error(
    message: str,
    error_code: Optional[str] = None,
    status_code: int = 400,
    data: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    content: dict[str, Any] = {
        "success": False,
        "message": message,
        "error_code": error_code,
        "status": status_code,
    }
    if data:
        content["data"] = data
    return JSONResponse(status_code=status_code, content=content)


def from_panel_error(exc: PanelError) -> JSONResponse:
    return error(exc.message, exc.code, exc.status_code, exc.data)


__all__ = ["success", "error", "from_panel_error"]
