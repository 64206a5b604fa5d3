"""OpenAI 兼容协议适配器（OpenAI / Kimi / GLM）。

这几家都使用 chat/completions 端点，接口风格一致：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 流式: SSE，每帧 `data: {...}`，以 `data: [DONE]` 结束。
- 工具调用: delta.tool_calls[] 按 index 增量下发，首帧携带 id 与函数名，
  后续帧只有 arguments 片段；部分厂商仍会返回旧版 function_call 字段。

本适配器只做“厂商 JSON ⇄ 统一模型”的转换，网络 I/O 由 Caller 负责。
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


DONE_SENTINEL = "[DONE]"

FINISH_REASONS: Dict[str, FinishReason] = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "content_filter",
    # GLM 专有
    "sensitive": "content_filter",
    "network_error": "error",
}

RATE_LIMIT_CODES = {"rate_limit_exceeded", "rate_limit_reached_error", "1302", "1303"}
CONTEXT_CODES = {"context_length_exceeded", "string_above_max_length"}
CONTEXT_MARKERS = ("maximum context length", "context length", "context_length", "too many tokens")


class OpenAICompatibleAdapter:
    """OpenAI 兼容协议的 Provider 适配器。

    - name: Provider 名称（供日志/调试使用）。
    - capabilities: 来自 ProviderConfig 的能力声明。
    """

    def __init__(self, config: ProviderConfig):
        self.config = config
        self.name = config.name
        self.capabilities = config.capabilities
        self._decoder = SSEDecoder()
        self._tracker = ToolCallTracker()
        self._finish_reason: Optional[FinishReason] = None
        self._usage: Optional[Usage] = None
        self._done = False

    # ---- 请求 ----

    def build_request(self, req: ChatRequest) -> ProviderWirePayload:
        """将 ChatRequest 转成 chat/completions 所需的请求 JSON。"""

        ensure_capabilities(req, self.capabilities, self.name)
        model_cfg = self.config.resolve_model(req.model)
        messages: List[Dict[str, Any]] = []
        for turn in req.turns:
            messages.extend(self._turn_to_payload(turn))
        body: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": messages,
            "max_tokens": req.max_tokens or model_cfg.max_tokens,
            "stream": req.stream,
        }
        temperature = req.temperature if req.temperature is not None else model_cfg.default_temperature
        if temperature is not None:
            body["temperature"] = temperature
        if req.top_p is not None:
            body["top_p"] = req.top_p
        if req.stop_sequences:
            body["stop"] = list(req.stop_sequences)
        # 工具调用：如果请求中携带了工具定义，则按 function tool 规范转换
        if req.tools:
            body["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            body["tool_choice"] = req.tool_choice
        if req.stream and self.config.options.get("stream_usage"):
            body["stream_options"] = {"include_usage": True}

        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if req.stream else "application/json",
        }
        headers.update(self.config.extra_headers)
        return ProviderWirePayload(
            method="POST",
            url=f"{self.config.base_url.rstrip('/')}/chat/completions",
            headers=headers,
            json_body=body,
            stream=req.stream,
            timeout=self.config.timeout,
        )

    def _turn_to_payload(self, turn: Turn) -> List[Dict[str, Any]]:
        # 工具结果在该协议中是独立的 role=tool 消息，每个结果一条
        results = [p for p in turn.parts if isinstance(p, ToolResultPart)]
        payloads: List[Dict[str, Any]] = [
            {"role": "tool", "tool_call_id": r.call_id, "content": r.content} for r in results
        ]
        text = "".join(p.text for p in turn.parts if isinstance(p, TextPart))
        calls = [p for p in turn.parts if isinstance(p, ToolCallPart)]
        if turn.role == "tool":
            return payloads
        if not text and not calls and results:
            return payloads
        payload: Dict[str, Any] = {"role": turn.role, "content": text}
        if calls:
            payload["content"] = text or None
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": self._call_arguments(call),
                    },
                }
                for call in calls
            ]
        return payloads + [payload]

    @staticmethod
    def _call_arguments(call: ToolCallPart) -> str:
        if call.arguments is not None:
            return json.dumps(call.arguments, ensure_ascii=False)
        return call.raw_arguments or "{}"

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        """把内部的 ToolDef 转成 function tool 描述。"""

        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters_schema(),
            },
        }

    # ---- 流式 ----

    def begin_stream(self) -> None:
        self._decoder.reset()
        self._tracker = ToolCallTracker()
        self._finish_reason = None
        self._usage = None
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
        if self._finish_reason is not None:
            # 部分厂商不发送 [DONE]，已收到 finish_reason 视为正常结束
            return events + self._complete()
        return events + [
            ErrorEvent(NetworkError("stream ended before completion", provider=self.name))
        ]

    def _handle_message(self, message: SSEMessage) -> List[ResponseEvent]:
        if self._done:
            return []
        data = message.data.strip()
        if not data:
            return []
        if data == DONE_SENTINEL:
            return self._complete()
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            return [ErrorEvent(self._malformed("undecodable stream frame", data))]
        if not isinstance(chunk, dict):
            return [ErrorEvent(self._malformed("stream frame is not an object", data))]
        if chunk.get("error"):
            self._done = True
            return [ErrorEvent(self.build_error(None, chunk))]
        try:
            return self._parse_stream_chunk(chunk)
        except (AttributeError, TypeError, ValueError) as exc:
            return [ErrorEvent(self._malformed(f"unexpected stream frame shape: {exc}", data))]

    def _parse_stream_chunk(self, data: Dict[str, Any]) -> List[ResponseEvent]:
        """解析流式响应中的单条增量。"""

        events: List[ResponseEvent] = []
        for ch in data.get("choices") or []:
            if ch.get("index", 0) != 0:
                continue
            delta = ch.get("delta") or {}
            content = text_field(delta.get("content"), "delta.content")
            if content:
                events.append(TextDelta(text=content, index=0))
            for pos, call in enumerate(delta.get("tool_calls") or []):
                events.extend(self._tool_call_delta(call.get("index", pos), call))
            function_call = delta.get("function_call")
            if function_call:
                events.extend(self._tool_call_delta("function_call", {"function": function_call}))
            finish = ch.get("finish_reason")
            if finish:
                self._finish_reason = FINISH_REASONS.get(finish, "stop")
                events.extend(ToolCallEnd(call_id=cid) for cid in self._tracker.drain())
        usage = self._parse_usage(data.get("usage"))
        if usage is not None:
            self._usage = usage
            events.append(UsageUpdate(usage=usage))
        return events

    def _tool_call_delta(self, key: Any, call: Dict[str, Any]) -> List[ResponseEvent]:
        events: List[ResponseEvent] = []
        func = call.get("function") or {}
        call_id = self._tracker.get(key)
        if call_id is None:
            call_id = call.get("id") or (key if isinstance(key, str) else f"call_{key}")
            self._tracker.start(key, call_id)
            events.append(
                ToolCallStart(
                    call_id=call_id,
                    name=text_field(func.get("name") or call.get("name"), "function.name"),
                    index=key if isinstance(key, int) else 0,
                )
            )
        arguments = func.get("arguments")
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments, ensure_ascii=False)
        arguments = text_field(arguments, "function.arguments")
        if arguments:
            events.append(ToolCallArgsChunk(call_id=call_id, chunk=arguments))
        return events

    def _complete(self) -> List[ResponseEvent]:
        self._done = True
        events: List[ResponseEvent] = [ToolCallEnd(call_id=cid) for cid in self._tracker.drain()]
        events.append(Done(finish_reason=self._finish_reason or "stop", usage=self._usage))
        return events

    # ---- 非流式 ----

    def parse_body(self, body: bytes) -> List[ResponseEvent]:
        """将完整响应 JSON 解析为一组事件（与流式结果等价）。"""

        data = load_json(body)
        if not isinstance(data, dict):
            return [ErrorEvent(self._malformed("undecodable response body", body))]
        if data.get("error"):
            return [ErrorEvent(self.build_error(None, data))]
        try:
            return self._parse_completion(data)
        except (AttributeError, TypeError, ValueError) as exc:
            return [ErrorEvent(self._malformed(f"unexpected response shape: {exc}", body))]

    def _parse_completion(self, data: Dict[str, Any]) -> List[ResponseEvent]:
        choices = data.get("choices") or []
        if not choices:
            return [ErrorEvent(self._malformed("response has no choices", data))]
        choice = choices[0]
        msg = choice.get("message") or {}
        events: List[ResponseEvent] = []
        content = text_field(msg.get("content"), "message.content")
        if content:
            events.append(TextDelta(text=content, index=0))
        raw_calls = list(msg.get("tool_calls") or [])
        if msg.get("function_call"):
            raw_calls.append({"id": "function_call", "function": msg["function_call"]})
        for idx, call in enumerate(raw_calls):
            func = call.get("function") or {}
            call_id = call.get("id") or f"call_{idx}"
            events.append(ToolCallStart(call_id=call_id, name=text_field(func.get("name"), "function.name"), index=idx))
            arguments = func.get("arguments")
            if isinstance(arguments, dict):
                arguments = json.dumps(arguments, ensure_ascii=False)
            arguments = text_field(arguments, "function.arguments")
            if arguments:
                events.append(ToolCallArgsChunk(call_id=call_id, chunk=arguments))
            events.append(ToolCallEnd(call_id=call_id))
        usage = self._parse_usage(data.get("usage"))
        finish = FINISH_REASONS.get(choice.get("finish_reason") or "", None)
        if finish is None:
            finish = "tool_calls" if raw_calls else "stop"
        events.append(Done(finish_reason=finish, usage=usage))
        return events

    @staticmethod
    def _parse_usage(raw: Any) -> Optional[Usage]:
        if not isinstance(raw, dict) or not raw:
            return None
        return Usage(
            input_tokens=int(raw.get("prompt_tokens") or 0),
            output_tokens=int(raw.get("completion_tokens") or 0),
        )

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

    def _error_reason(self, status_code: Optional[int], body: Any):
        data = load_json(body)
        err: Any = data.get("error") if isinstance(data, dict) else None
        if isinstance(err, dict):
            code = str(err.get("code") or "")
            err_type = str(err.get("type") or "")
            message = str(err.get("message") or body_text(body, 500))
        else:
            code, err_type = "", ""
            message = str(err) if err else body_text(body, 500) or f"HTTP {status_code}"
        lowered = message.lower()
        if code in CONTEXT_CODES or any(marker in lowered for marker in CONTEXT_MARKERS):
            return "context_length", message
        if code == "insufficient_quota":
            return "invalid", message
        if code in RATE_LIMIT_CODES or err_type in RATE_LIMIT_CODES:
            return "rate_limit", message
        if status_code is None and err_type in ("invalid_request_error",):
            return "invalid", message
        return reason_for_status(status_code), message

    def _malformed(self, message: str, raw: Any) -> CallError:
        return MalformedResponseError(message, provider=self.name, raw=body_text(raw))
