"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 WebSocket 层做统一捕获与用户提示。

Provider 相关错误分为四类：
- NetworkError: 无法连到厂商（DNS、连接重置、超时）。
- ApiError: 厂商返回非 2xx 且非 429。
- RateLimitError: 429，单独保留以便后续接入退避策略。
- InvalidResponseError: 响应结构无法解析。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、session_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出，message 保留原始响应体。"""


class RateLimitError(BusinessError):
    """Provider 限流错误（HTTP 429），与 ApiError 区分开。"""


class InvalidResponseError(BusinessError):
    """Provider 响应结构不符合预期。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class SessionNotFoundError(BusinessError):
    """会话不存在。Agent 循环在调用 Provider 之前检查。"""

    def __init__(self, session_id: str):
        super().__init__(code="SESSION_NOT_FOUND", message=f"Session {session_id} not found", http_status=404)
        self.session_id = session_id


class LoopExceededError(BusinessError):
    """工具调用轮数达到上限仍未得到最终回答。"""

    def __init__(self, max_loops: int):
        super().__init__(code="MAX_TOOL_LOOPS", message="Max tool call loops reached", http_status=500)
        self.max_loops = max_loops
