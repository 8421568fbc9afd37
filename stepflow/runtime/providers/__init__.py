# stepflow/runtime/providers package
# Provider execution adapter: HTTP (streamed) and CLI paths, fallbacks,
# prompt composition and the incremental event-stream parser.

from .api_runner import ClaudeApiOptions, ProviderApiRunner, parse_retry_after_ms
from .cli_runner import CliRunner, run_command
from .executor import ProviderExecutor
from .mcp_calls import format_mcp_results, parse_mcp_calls
from .models import EMPTY_OUTPUT_MESSAGE, ProviderRequest
from .normalizers import encode_mcp_calls
from .retry_policy import resolve_effective_stage_timeout_ms
from .sse import SseStreamParser, StreamResult

__all__ = [
    "ClaudeApiOptions",
    "ProviderApiRunner",
    "parse_retry_after_ms",
    "CliRunner",
    "run_command",
    "ProviderExecutor",
    "format_mcp_results",
    "parse_mcp_calls",
    "EMPTY_OUTPUT_MESSAGE",
    "ProviderRequest",
    "encode_mcp_calls",
    "resolve_effective_stage_timeout_ms",
    "SseStreamParser",
    "StreamResult",
]
