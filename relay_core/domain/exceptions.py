"""统一业务异常模型。

所有跨模块抛出的错误都继承自 BusinessError，
读操作把它们装进 Result 返回，流式发送通过 handler.on_error 回调交付。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "AUTH_REJECTED"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、url 等）。
    """

    default_status = 400

    def __init__(self, code: str, message: str, http_status: int | None = None, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status if http_status is not None else self.default_status
        self.extra = extra
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class AuthenticationFailed(BusinessError):
    """凭据缺失或被拒绝，且刷新机会已用尽。"""

    default_status = 401


class CredentialRejected(AuthenticationFailed):
    """后端对某一次请求返回 401/403。

    ConversationClient 捕获它后会作废凭据并重试一次；
    第二次仍被拒绝时改为抛出 AuthenticationFailed。
    """


class LoginCancelled(BusinessError):
    """交互式登录被用户取消（由 InteractiveAuthenticator 抛出）。"""

    default_status = 401


class NotFound(BusinessError):
    """引用的会话或模型在后端不存在。"""

    default_status = 404


class ValidationError(BusinessError):
    """调用方参数或配置校验失败。"""


class TransportError(BusinessError):
    """网络层或后端不可用，例如连接失败、超时、5xx、限流。"""

    default_status = 503


class MalformedResponse(BusinessError):
    """后端返回的数据不符合预期结构。"""

    default_status = 502
