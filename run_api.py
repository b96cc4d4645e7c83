"""启动 Agent Gateway 的 HTTP / WebSocket 服务。

用法:
    python run_api.py

监听地址、端口、默认 Provider 等均来自 config.yaml 或环境变量
（如 DEFAULT_PROVIDER、OPENAI_API_KEY、ANTHROPIC_API_KEY、OLLAMA_BASE_URL）。
"""

import uvicorn

from agent_gateway.config.settings import settings

if __name__ == "__main__":
    uvicorn.run(
        "agent_gateway.api.app:app",
        host=settings.host,
        port=settings.port,
    )
