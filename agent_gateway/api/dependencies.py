"""共享的 FastAPI 依赖。

ChatService 在应用启动时创建一次，挂在 app.state 上，HTTP 与 WebSocket 路由共用。
"""

from starlette.requests import HTTPConnection

from agent_gateway.api.service import ChatService


def get_service(conn: HTTPConnection) -> ChatService:
    service = getattr(conn.app.state, "service", None)
    if service is None:
        raise RuntimeError("ChatService not initialized.")
    return service
