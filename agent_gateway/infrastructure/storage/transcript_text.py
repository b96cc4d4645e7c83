"""会话纯文本导入/导出。

导出格式::

    Session: <name>
    ID: <id>
    Created At: <iso time>
    ---
    [USER]: 第一行
    第二行
    ---
    [ASSISTANT]: ...
    ---

导入时角色不区分大小写，统一转为小写；多行内容按原样拼回，首尾空白被去掉。
"""

import re
from typing import Iterable, List, Tuple

from agent_gateway.domain.models import ROLES
from agent_gateway.domain.session import MessageRecord, Session

SEPARATOR = "---"
DEFAULT_IMPORT_NAME = "Imported Session"

_ROLE_LINE = re.compile(r"^\[(%s)\]: ?(.*)$" % "|".join(ROLES), re.IGNORECASE)


def export_transcript(session: Session, messages: Iterable[MessageRecord]) -> str:
    lines = [
        f"Session: {session.name}",
        f"ID: {session.id}",
        f"Created At: {session.created_at.isoformat()}",
        SEPARATOR,
    ]
    for m in messages:
        lines.append(f"[{m.role.upper()}]: {m.content}")
        lines.append(SEPARATOR)
    return "\n".join(lines) + "\n"


def import_transcript(text: str) -> Tuple[str, List[Tuple[str, str]]]:
    """解析导出文本，返回 (会话名, [(role, content), ...])。"""

    lines = text.splitlines()
    name = DEFAULT_IMPORT_NAME
    if lines and lines[0].startswith("Session: "):
        name = lines[0][len("Session: "):].strip() or DEFAULT_IMPORT_NAME
        lines = lines[1:]

    entries: List[Tuple[str, str]] = []
    role = None
    buf: List[str] = []
    for line in lines:
        if line == SEPARATOR:
            if role is not None:
                entries.append((role, "\n".join(buf).strip()))
            role, buf = None, []
            continue
        match = _ROLE_LINE.match(line)
        if match and role is None:
            role = match.group(1).lower()
            buf = [match.group(2)]
        elif role is not None:
            buf.append(line)
        # 头部的 ID / Created At 行没有角色，直接丢弃
    if role is not None:
        entries.append((role, "\n".join(buf).strip()))
    return name, entries
