"""Tool call types exchanged between providers and external tool servers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ToolCall:
    """A structured request from a provider to invoke an external tool."""

    server_id: str
    tool: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def signature(self) -> str:
        """Composite identity used for de-duplication."""
        return f"{self.server_id}::{self.tool}::{json.dumps(self.arguments, sort_keys=True)}"

    def to_dict(self) -> Dict[str, Any]:
        return {"server_id": self.server_id, "tool": self.tool, "arguments": dict(self.arguments)}


@dataclass
class ToolResult:
    """Outcome of one dispatched tool call."""

    server_id: str
    tool: str
    ok: bool
    output: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"server_id": self.server_id, "tool": self.tool, "ok": self.ok}
        if self.ok:
            data["output"] = self.output
        else:
            data["error"] = self.error or "unknown error"
        return data
