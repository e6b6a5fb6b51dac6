"""领域层模型与协议。

包含：
- models: ChatMessage / ChatRequest 模型与 channel 定义。
- conversation: 只追加的 Conversation、持久化快照及 SessionStore 抽象。
- exceptions: 业务异常类型定义。
"""
