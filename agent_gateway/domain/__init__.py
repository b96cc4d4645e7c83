"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ChatOptions / ChatResult 模型。
- session: 会话与消息的存储模型及 MessageStore 抽象。
- exceptions: 业务异常类型定义。
"""
