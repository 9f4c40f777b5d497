"""领域层模型与协议。

包含：
- models: 会话消息、补全结果、流式帧、重试策略等统一模型。
- conversation: 会话历史（ConversationHistory）及其受控的修改接口。
- exceptions: 业务异常类型定义。
"""
