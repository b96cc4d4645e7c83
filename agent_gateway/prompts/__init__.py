"""系统提示词构造工具。

在配置的提示词前加上当前日期，并替换其中的 {current_date} 占位符，
用于构造 ChatMessage(role="system")。
"""

from datetime import datetime
from typing import Optional

from agent_gateway.config.settings import settings

DATE_FORMAT = "%A, %B %d, %Y"


def build_system_prompt(template: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """返回带日期的系统提示词。

    template 默认取 settings.system_prompt；只替换 {current_date}，
    其他花括号原样保留。
    """

    current_date = (now or datetime.now()).strftime(DATE_FORMAT)
    prompt = (template if template is not None else settings.system_prompt).replace("{current_date}", current_date)
    return f"Current Date: {current_date}\n\n{prompt}"
