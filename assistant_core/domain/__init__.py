"""领域层模型与协议。

包含：
- models: 统一的 Turn / Conversation / ChatRequest / AssembledMessage 模型。
- events: 流式响应事件（ResponseEvent）。
- conversation: ConversationStore 协议与会话序列化。
- exceptions: 业务异常与 ErrorKind 错误分类。
"""
