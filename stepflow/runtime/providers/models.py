"""Request and response models for provider execution.

Response bodies are decoded through pydantic models that tolerate partial
or unexpected shapes: anything that does not validate degrades to the
"no text output" sentinel instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError

from stepflow.config.runtime_config import ProviderConfig

from ..cancellation import CancellationToken
from ..types import OutputFormat, PipelineStep

EMPTY_OUTPUT_MESSAGE = "Provider returned no text output."

LogFn = Callable[[str], None]


def _discard_log(line: str) -> None:
    return None


@dataclass
class ProviderRequest:
    """Everything one provider call needs.

    Attributes:
        provider: Provider credentials and endpoint.
        step: The step being executed (fallbacks pass a modified copy).
        context: Composed context text for the step.
        task: Run task text.
        output_mode: markdown or json.
        mcp_server_ids: External tool servers enabled for this call.
        token: Cancellation token threaded through every suspending call.
        log: Callback for provider progress lines.
        stage_timeout_ms: Remaining stage budget, used to size CLI attempts.
    """

    provider: ProviderConfig
    step: PipelineStep
    context: str
    task: str
    output_mode: OutputFormat = OutputFormat.MARKDOWN
    mcp_server_ids: Tuple[str, ...] = ()
    token: CancellationToken = field(default_factory=CancellationToken)
    log: LogFn = _discard_log
    stage_timeout_ms: Optional[int] = None

    @property
    def model(self) -> str:
        return (self.step.model or self.provider.default_model or "").strip()


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="allow")


class ContentBlock(_Lenient):
    type: Optional[str] = None
    text: Optional[str] = None
    name: Optional[str] = None
    input: Optional[Dict[str, Any]] = None


class ClaudeMessageResponse(_Lenient):
    content: List[ContentBlock] = []


class OpenAIOutputContent(_Lenient):
    type: Optional[str] = None
    text: Optional[str] = None


class OpenAIOutputItem(_Lenient):
    type: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None
    content: List[OpenAIOutputContent] = []


class OpenAIResponse(_Lenient):
    output_text: Optional[str] = None
    output: List[OpenAIOutputItem] = []


def decode_claude_response(body: Any) -> Optional[ClaudeMessageResponse]:
    try:
        return ClaudeMessageResponse.model_validate(body)
    except ValidationError:
        return None


def decode_openai_response(body: Any) -> Optional[OpenAIResponse]:
    try:
        return OpenAIResponse.model_validate(body)
    except ValidationError:
        return None
