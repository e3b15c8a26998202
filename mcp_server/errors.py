"""Error definitions for MCP tools.

This module defines structured error types with stable codes that can be
surfaced to MCP clients. Codes raised by kata_static are passed through
unchanged.
"""

from dataclasses import dataclass
from typing import Any

from kata_static.errors import KataStaticError

VALIDATION_ERROR = "validation"
RUN_NOT_FOUND = "run_not_found"
UNKNOWN_ASSET = "unknown_asset"
INTERNAL_ERROR = "internal_error"


@dataclass
class MCPError:
    """Structured error response for MCP tools.

    Attributes:
        code: Stable error code for programmatic handling.
        message: Human-readable error message.
        details: Optional additional error details.
    """

    code: str
    message: str
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        return result


def make_error(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> MCPError:
    """Create an MCPError instance."""
    return MCPError(code=code, message=message, details=details)


def validation_error(message: str, details: dict[str, Any] | None = None) -> MCPError:
    """Create a validation error."""
    return make_error(VALIDATION_ERROR, message, details)


def run_not_found(run_id: int) -> MCPError:
    """Create a run not found error."""
    return make_error(
        RUN_NOT_FOUND,
        f"Run not found: {run_id}",
        details={"run_id": run_id},
    )


def from_exception(error: KataStaticError) -> MCPError:
    """Wrap a kata_static error, keeping its code."""
    return make_error(error.code, str(error))


__all__ = [
    "INTERNAL_ERROR",
    "RUN_NOT_FOUND",
    "UNKNOWN_ASSET",
    "VALIDATION_ERROR",
    "MCPError",
    "from_exception",
    "make_error",
    "run_not_found",
    "validation_error",
]
