"""Line-oriented stream-json protocol spoken by the agent CLI.

The CLI prints one JSON object per line on stdout. ``decode_line`` turns
each line into a tagged message; everything this layer does not act on
decodes to ``OtherMessage`` so the raw line is still available.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})

# Tool names the CLI uses for delegating work to a sub-agent
DELEGATE_TOOL_NAMES = frozenset({"Task", "Agent"})


# ---------------------------------------------------------------------------
# Outbound: what we write to the CLI's stdin
# ---------------------------------------------------------------------------


class ImageAttachment(BaseModel):
    data: str = Field(description="Base64-encoded image bytes.")
    media_type: str = Field(default="image/png")


class TurnPayload(BaseModel):
    """A user turn: text, images, or both."""

    text: str = ""
    images: list[ImageAttachment] = Field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.text and not self.images


class PermissionPolicy(BaseModel):
    mode: str | None = None
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)


def build_permission_args(policy: PermissionPolicy | None) -> list[str]:
    """Build CLI permission args from a policy.

    ExitPlanMode and AskUserQuestion are always allowed outside bypass mode:
    they are interactive and cannot be approved over stream-json input.
    """
    if policy is None or not policy.mode or policy.mode == "bypassPermissions":
        return ["--dangerously-skip-permissions"]

    args = ["--permission-mode", policy.mode]
    for tool in policy.allowed_tools:
        args += ["--allowedTools", tool]
    for tool in policy.disallowed_tools:
        args += ["--disallowedTools", tool]
    args += ["--allowedTools", "ExitPlanMode"]
    args += ["--allowedTools", "AskUserQuestion"]
    return args


def build_model_args(model: str | None) -> list[str]:
    return ["--model", model] if model else []


def build_stream_message(payload: TurnPayload) -> str:
    """Encode a user turn as a single stream-json line (no trailing newline)."""
    blocks: list[dict[str, Any]] = []
    for img in payload.images:
        media_type = img.media_type if img.media_type in ALLOWED_IMAGE_TYPES else "image/png"
        blocks.append(
            {
                "type": "image",
                "source": {"type": "base64", "media_type": media_type, "data": img.data},
            }
        )
    if payload.text:
        blocks.append({"type": "text", "text": payload.text})
    return json.dumps(
        {"type": "user", "message": {"role": "user", "content": blocks}},
        ensure_ascii=False,
    )


# ---------------------------------------------------------------------------
# Inbound: what the CLI prints on stdout
# ---------------------------------------------------------------------------


@dataclass
class DelegateCall:
    """A parent-side request to spawn a sub-agent."""

    tool_use_id: str
    prompt: str


@dataclass
class ResultMessage:
    """Turn completion."""

    type: Literal["result"] = "result"
    subtype: str = ""
    is_error: bool = False
    result: str | None = None
    raw: str = ""


@dataclass
class ProgressMessage:
    type: Literal["progress"] = "progress"
    raw: str = ""


@dataclass
class AssistantMessage:
    type: Literal["assistant"] = "assistant"
    delegate_calls: list[DelegateCall] = field(default_factory=list)
    raw: str = ""


@dataclass
class OtherMessage:
    type: str = ""
    raw: str = ""


StreamMessage = ResultMessage | ProgressMessage | AssistantMessage | OtherMessage


def decode_line(line: str) -> StreamMessage | None:
    """Decode one stdout line. Returns None for blank or non-JSON lines."""
    line = line.strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Ignoring non-JSON agent output: %s", line[:200])
        return None
    if not isinstance(obj, dict):
        return None

    msg_type = obj.get("type")
    if msg_type == "result":
        result = obj.get("result")
        return ResultMessage(
            subtype=str(obj.get("subtype") or ""),
            is_error=bool(obj.get("is_error", False)),
            result=result if isinstance(result, str) else None,
            raw=line,
        )
    if msg_type == "progress":
        return ProgressMessage(raw=line)
    if msg_type == "assistant":
        return AssistantMessage(delegate_calls=_delegate_calls(obj), raw=line)
    return OtherMessage(type=str(msg_type or ""), raw=line)


def _delegate_calls(obj: dict[str, Any]) -> list[DelegateCall]:
    message = obj.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    calls = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "tool_use" and block.get("name") in DELEGATE_TOOL_NAMES:
            tool_input = block.get("input") or {}
            prompt = tool_input.get("prompt", "") if isinstance(tool_input, dict) else ""
            calls.append(DelegateCall(tool_use_id=str(block.get("id", "")), prompt=prompt or ""))
    return calls


def message_text(content: Any) -> str:
    """First text of a message's content (a plain string or a block list)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                return str(block.get("text", ""))
    return ""
