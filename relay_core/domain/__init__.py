"""领域层模型与协议。

包含：
- models: Credential / Message / ConversationDetail / ModelDescriptor / PagedResult / Result。
- conversation: ConversationRepository 抽象。
- exceptions: 业务异常类型定义。
"""
