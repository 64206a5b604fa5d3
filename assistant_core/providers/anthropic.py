"""Anthropic Messages API 适配器。

与 OpenAI 兼容协议的主要差异：
- URL: {base_url}/v1/messages
- 认证: x-api-key: <api_key>，并且必须携带 anthropic-version 请求头。
- system 提示词是请求体顶层字段，不在 messages 里。
- 消息内容是 content block 列表：text / tool_use / tool_result；
  工具结果以 role=user 的 tool_result block 回传。
- 流式: 命名 SSE 事件（message_start、content_block_start、content_block_delta、
  content_block_stop、message_delta、message_stop、ping、error），
  没有 [DONE] 哨兵，以 message_stop 结束。
- 错误体: {"type": "error", "error": {"type": "...", "message": "..."}}。
"""

import json
from typing import Any, Dict, List, Mapping, Optional

from assistant_core.domain.events import (
    Done,
    ErrorEvent,
    ResponseEvent,
    TextDelta,
    ToolCallArgsChunk,
    ToolCallEnd,
    ToolCallStart,
    UsageUpdate,
)
from assistant_core.domain.exceptions import CallError, ErrorKind, MalformedResponseError, NetworkError
from assistant_core.domain.models import (
    ChatRequest,
    FinishReason,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    Turn,
    Usage,
)
from assistant_core.providers.base import (
    ProviderWirePayload,
    ToolCallTracker,
    body_text,
    ensure_capabilities,
    load_json,
    make_error,
    parse_retry_after,
    reason_for_status,
    reason_kind,
    text_field,
)
from assistant_core.providers.registry import ProviderConfig
from assistant_core.providers.sse import SSEDecoder, SSEMessage
from assistant_core.tools.definitions import ToolDef


API_VERSION = "2023-06-01"
API_VERSION_HEADER_KEY = "anthropic-version"
AUTHORIZATION_HEADER_KEY = "x-api-key"

STOP_REASONS: Dict[str, FinishReason] = {
    "end_turn": "stop",
    "max_tokens": "length",
    "stop_sequence": "stop_sequence",
    "tool_use": "tool_calls",
    "pause_turn": "stop",
    "refusal": "content_filter",
}

# error.type -> 错误原因
ERROR_TYPES = {
    "rate_limit_error": "rate_limit",
    "overloaded_error": "server",
    "api_error": "server",
    "timeout_error": "timeout",
    "authentication_error": "auth",
    "permission_error": "auth",
    "invalid_request_error": "invalid",
    "not_found_error": "invalid",
    "request_too_large": "invalid",
}

CONTEXT_MARKERS = ("prompt is too long", "context window", "context length")

TOOL_CHOICES = {"auto": {"type": "auto"}, "required": {"type": "any"}, "none": {"type": "none"}}


class AnthropicAdapter:
    """Anthropic Messages API 的 Provider 适配器。"""

    def __init__(self, config: ProviderConfig):
        self.config = config
        self.name = config.name
        self.capabilities = config.capabilities
        self._decoder = SSEDecoder()
        self._tracker = ToolCallTracker()
        self._stop_reason: Optional[FinishReason] = None
        self._usage = Usage()
        self._done = False

    # ---- 请求 ----

    def build_request(self, req: ChatRequest) -> ProviderWirePayload:
        ensure_capabilities(req, self.capabilities, self.name)
        model_cfg = self.config.resolve_model(req.model)
        system_parts: List[str] = []
        messages: List[Dict[str, Any]] = []
        for turn in req.turns:
            if turn.role == "system":
                if turn.text:
                    system_parts.append(turn.text)
                continue
            message = self._turn_to_payload(turn)
            if not message["content"]:
                continue
            # 相邻同角色消息合并，满足 user/assistant 交替要求
            if messages and messages[-1]["role"] == message["role"]:
                messages[-1]["content"].extend(message["content"])
            else:
                messages.append(message)

        body: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": messages,
            "max_tokens": req.max_tokens or model_cfg.max_tokens,
            "stream": req.stream,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        temperature = req.temperature if req.temperature is not None else model_cfg.default_temperature
        if temperature is not None:
            body["temperature"] = temperature
        if req.top_p is not None:
            body["top_p"] = req.top_p
        if req.stop_sequences:
            body["stop_sequences"] = list(req.stop_sequences)
        if req.tools:
            body["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            body["tool_choice"] = TOOL_CHOICES[req.tool_choice]

        headers = {
            AUTHORIZATION_HEADER_KEY: self.config.api_key,
            API_VERSION_HEADER_KEY: str(self.config.options.get("api_version") or API_VERSION),
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if req.stream else "application/json",
        }
        headers.update(self.config.extra_headers)
        return ProviderWirePayload(
            method="POST",
            url=f"{self.config.base_url.rstrip('/')}/v1/messages",
            headers=headers,
            json_body=body,
            stream=req.stream,
            timeout=self.config.timeout,
        )

    @staticmethod
    def _turn_to_payload(turn: Turn) -> Dict[str, Any]:
        blocks: List[Dict[str, Any]] = []
        for part in turn.parts:
            if isinstance(part, TextPart):
                if part.text:
                    blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ToolCallPart):
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": part.id,
                        "name": part.name,
                        "input": part.arguments if part.arguments is not None else {},
                    }
                )
            elif isinstance(part, ToolResultPart):
                block: Dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": part.call_id,
                    "content": part.content,
                }
                if part.is_error:
                    block["is_error"] = True
                blocks.append(block)
        role = "assistant" if turn.role == "assistant" else "user"
        return {"role": role, "content": blocks}

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        return {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.parameters_schema(),
        }

    # ---- 流式 ----

    def begin_stream(self) -> None:
        self._decoder.reset()
        self._tracker = ToolCallTracker()
        self._stop_reason = None
        self._usage = Usage()
        self._done = False

    def parse_event(self, raw_chunk: bytes) -> List[ResponseEvent]:
        try:
            messages = self._decoder.feed(raw_chunk)
        except UnicodeDecodeError as exc:
            return [ErrorEvent(self._malformed(f"stream chunk is not valid UTF-8: {exc}", raw_chunk))]
        events: List[ResponseEvent] = []
        for message in messages:
            events.extend(self._handle_message(message))
        return events

    def finish_stream(self) -> List[ResponseEvent]:
        events: List[ResponseEvent] = []
        if not self._done:
            try:
                for message in self._decoder.flush():
                    events.extend(self._handle_message(message))
            except UnicodeDecodeError as exc:
                return events + [ErrorEvent(self._malformed(f"stream tail is not valid UTF-8: {exc}", b""))]
        if self._done:
            return events
        return events + [
            ErrorEvent(NetworkError("stream ended before message_stop", provider=self.name))
        ]

    def _handle_message(self, message: SSEMessage) -> List[ResponseEvent]:
        if self._done or not message.data.strip():
            return []
        try:
            data = json.loads(message.data)
        except json.JSONDecodeError:
            return [ErrorEvent(self._malformed(f"undecodable {message.event} event", message.data))]
        if not isinstance(data, dict):
            return [ErrorEvent(self._malformed(f"{message.event} event is not an object", message.data))]
        kind = data.get("type") or message.event
        handler = getattr(self, f"_on_{kind}", None)
        if handler is None:
            # 未知事件类型向前兼容，直接忽略
            return []
        try:
            return handler(data)
        except (AttributeError, TypeError, ValueError) as exc:
            return [ErrorEvent(self._malformed(f"unexpected {kind} event shape: {exc}", message.data))]

    def _on_ping(self, data: Dict[str, Any]) -> List[ResponseEvent]:
        return []

    def _on_message_start(self, data: Dict[str, Any]) -> List[ResponseEvent]:
        usage = self._merge_usage((data.get("message") or {}).get("usage"))
        return [UsageUpdate(usage=usage)] if usage is not None else []

    def _on_content_block_start(self, data: Dict[str, Any]) -> List[ResponseEvent]:
        index = data.get("index", 0)
        block = data.get("content_block") or {}
        if block.get("type") == "text":
            text = text_field(block.get("text"), "content_block.text")
            return [TextDelta(text=text, index=index)] if text else []
        if block.get("type") == "tool_use":
            call_id = block.get("id") or f"toolu_{index}"
            self._tracker.start(index, call_id)
            name = text_field(block.get("name"), "tool_use.name")
            events: List[ResponseEvent] = [ToolCallStart(call_id=call_id, name=name, index=index)]
            initial = block.get("input")
            if initial:
                events.append(ToolCallArgsChunk(call_id=call_id, chunk=json.dumps(initial, ensure_ascii=False)))
            return events
        return []

    def _on_content_block_delta(self, data: Dict[str, Any]) -> List[ResponseEvent]:
        index = data.get("index", 0)
        delta = data.get("delta") or {}
        if delta.get("type") == "text_delta":
            text = text_field(delta.get("text"), "text_delta.text")
            return [TextDelta(text=text, index=index)] if text else []
        if delta.get("type") == "input_json_delta":
            call_id = self._tracker.get(index)
            if call_id is None:
                return [ErrorEvent(self._malformed(f"input_json_delta for unknown block {index}", data))]
            partial = text_field(delta.get("partial_json"), "input_json_delta.partial_json")
            return [ToolCallArgsChunk(call_id=call_id, chunk=partial)] if partial else []
        return []

    def _on_content_block_stop(self, data: Dict[str, Any]) -> List[ResponseEvent]:
        call_id = self._tracker.end(data.get("index", 0))
        return [ToolCallEnd(call_id=call_id)] if call_id else []

    def _on_message_delta(self, data: Dict[str, Any]) -> List[ResponseEvent]:
        stop = (data.get("delta") or {}).get("stop_reason")
        if stop:
            self._stop_reason = STOP_REASONS.get(stop, "stop")
        usage = self._merge_usage(data.get("usage"))
        return [UsageUpdate(usage=usage)] if usage is not None else []

    def _on_message_stop(self, data: Dict[str, Any]) -> List[ResponseEvent]:
        self._done = True
        events: List[ResponseEvent] = [ToolCallEnd(call_id=cid) for cid in self._tracker.drain()]
        events.append(Done(finish_reason=self._stop_reason or "stop", usage=self._usage))
        return events

    def _on_error(self, data: Dict[str, Any]) -> List[ResponseEvent]:
        self._done = True
        return [ErrorEvent(self.build_error(None, data))]

    def _merge_usage(self, raw: Any) -> Optional[Usage]:
        if not isinstance(raw, dict) or not raw:
            return None
        self._usage = self._usage.merge(
            Usage(
                input_tokens=int(raw.get("input_tokens") or 0),
                output_tokens=int(raw.get("output_tokens") or 0),
            )
        )
        return self._usage

    # ---- 非流式 ----

    def parse_body(self, body: bytes) -> List[ResponseEvent]:
        data = load_json(body)
        if not isinstance(data, dict):
            return [ErrorEvent(self._malformed("undecodable response body", body))]
        if data.get("type") == "error":
            return [ErrorEvent(self.build_error(None, data))]
        content = data.get("content")
        if not isinstance(content, list):
            return [ErrorEvent(self._malformed("response has no content blocks", body))]
        try:
            return self._parse_message(data, content)
        except (AttributeError, TypeError, ValueError) as exc:
            return [ErrorEvent(self._malformed(f"unexpected response shape: {exc}", body))]

    def _parse_message(self, data: Dict[str, Any], content: List[Any]) -> List[ResponseEvent]:
        events: List[ResponseEvent] = []
        for index, block in enumerate(content):
            if block.get("type") == "text":
                text = text_field(block.get("text"), "content_block.text")
                if text:
                    events.append(TextDelta(text=text, index=index))
            elif block.get("type") == "tool_use":
                call_id = block.get("id") or f"toolu_{index}"
                events.append(
                    ToolCallStart(call_id=call_id, name=text_field(block.get("name"), "tool_use.name"), index=index)
                )
                events.append(
                    ToolCallArgsChunk(call_id=call_id, chunk=json.dumps(block.get("input") or {}, ensure_ascii=False))
                )
                events.append(ToolCallEnd(call_id=call_id))
        raw_usage = data.get("usage") or {}
        usage = Usage(
            input_tokens=int(raw_usage.get("input_tokens") or 0),
            output_tokens=int(raw_usage.get("output_tokens") or 0),
        )
        finish = STOP_REASONS.get(data.get("stop_reason") or "", "stop")
        events.append(Done(finish_reason=finish, usage=usage))
        return events

    # ---- 错误 ----

    def classify_error(self, status_code: Optional[int], body: Any) -> ErrorKind:
        reason, _ = self._error_reason(status_code, body)
        return reason_kind(reason)

    def build_error(
        self,
        status_code: Optional[int],
        body: Any,
        headers: Optional[Mapping[str, str]] = None,
    ) -> CallError:
        reason, message = self._error_reason(status_code, body)
        return make_error(
            reason,
            message,
            provider=self.name,
            status_code=status_code,
            raw=body_text(body),
            retry_after=parse_retry_after(headers),
        )

    @staticmethod
    def _error_reason(status_code: Optional[int], body: Any):
        data = load_json(body)
        err = data.get("error") if isinstance(data, dict) else None
        if not isinstance(err, dict):
            return reason_for_status(status_code), body_text(body, 500) or f"HTTP {status_code}"
        err_type = str(err.get("type") or "")
        message = str(err.get("message") or err_type or f"HTTP {status_code}")
        if any(marker in message.lower() for marker in CONTEXT_MARKERS):
            return "context_length", message
        if status_code == 529:
            return "server", message
        reason = ERROR_TYPES.get(err_type)
        if reason is None:
            reason = reason_for_status(status_code)
        return reason, message

    def _malformed(self, message: str, raw: Any) -> CallError:
        return MalformedResponseError(message, provider=self.name, raw=body_text(raw))
