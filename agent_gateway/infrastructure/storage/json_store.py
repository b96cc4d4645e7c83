import json
import os
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List, Optional
from uuid import uuid4

from agent_gateway.config.settings import settings
from agent_gateway.domain.exceptions import BusinessError
from agent_gateway.domain.session import MessageRecord, Session, StoreStats

MAX_SCAN = 1_000_000


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(raw: str) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


class JsonSessionStore:
    """基于 JSON 文件的会话存储。

    每个会话一个目录：meta.json 保存会话信息，messages.jsonl 按写入顺序追加消息。
    所有方法都是同步的，并在内部持有同一把互斥锁，
    调用方不会在持锁期间发生网络等待。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._sessions_root = self._root / "sessions"
        self._sessions_root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    # ---- 会话 ----

    def create_session(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> Session:
        sid = str(uuid4())
        now = datetime.now(timezone.utc)
        session = Session(id=sid, name=name, created_at=now, updated_at=now, metadata=dict(metadata or {}))
        with self._lock:
            sdir = self._sessions_root / sid
            sdir.mkdir(parents=True, exist_ok=True)
            self._write_meta(sdir, session)
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._read_session(session_id)

    def list_sessions(self, limit: int = 50, offset: int = 0) -> List[Session]:
        with self._lock:
            items: List[Session] = []
            for sdir in self._sessions_root.iterdir():
                if not sdir.is_dir():
                    continue
                session = self._read_session(sdir.name)
                if session is not None:
                    items.append(session)
        items.sort(key=lambda s: s.updated_at, reverse=True)
        return items[offset:offset + limit]

    def update_session(
        self,
        session_id: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Session]:
        with self._lock:
            session = self._read_session(session_id)
            if session is None:
                return None
            if name is not None:
                session.name = name
            if metadata is not None:
                session.metadata = dict(metadata)
            session.updated_at = datetime.now(timezone.utc)
            self._write_meta(self._sessions_root / session_id, session)
            return session

    def delete_session(self, session_id: str) -> bool:
        """删除会话及其全部消息（整个目录一起移除）。"""
        with self._lock:
            sdir = self._session_dir(session_id)
            if sdir is None or not sdir.exists():
                return False
            try:
                shutil.rmtree(sdir)
            except OSError as e:
                raise BusinessError(code="STORE_DELETE_ERROR", message=str(e), http_status=500)
            return True

    # ---- 消息 ----

    def insert_message(
        self,
        session_id: str,
        role: str,
        content: str,
        model: Optional[str] = None,
        token_count: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MessageRecord:
        record = MessageRecord(
            id=f"m-{uuid4().hex}",
            session_id=session_id,
            role=role,
            content=content,
            model=model,
            token_count=token_count,
            created_at=datetime.now(timezone.utc),
            metadata=dict(metadata or {}),
        )
        with self._lock:
            session = self._read_session(session_id)
            if session is None:
                raise BusinessError(code="SESSION_NOT_FOUND", message=session_id, http_status=404)
            sdir = self._sessions_root / session_id
            payload = {
                "id": record.id,
                "session_id": record.session_id,
                "role": record.role,
                "content": record.content,
                "model": record.model,
                "token_count": record.token_count,
                "created_at": _iso(record.created_at),
                "metadata": record.metadata,
            }
            try:
                with (sdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                    f.write(json.dumps(payload, ensure_ascii=False) + "\n")
            except OSError as e:
                raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), http_status=500)
            session.updated_at = record.created_at
            self._write_meta(sdir, session)
        return record

    def list_messages(self, session_id: str, limit: int = 50, offset: int = 0) -> List[MessageRecord]:
        """按创建顺序（从旧到新）返回消息。"""
        with self._lock:
            sdir = self._session_dir(session_id)
            msgs_path = sdir / "messages.jsonl" if sdir else None
            items: List[MessageRecord] = []
            if msgs_path is None or not msgs_path.exists():
                return items
            for line in msgs_path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    items.append(self._to_message(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError):
                    continue
        return items[offset:offset + limit]

    def recent_messages(self, session_id: str, limit: int = 50) -> List[MessageRecord]:
        """最近 limit 条消息，仍按从旧到新排列。"""
        items = self.list_messages(session_id, limit=MAX_SCAN)
        return items[-limit:] if limit > 0 else []

    def stats(self) -> StoreStats:
        with self._lock:
            session_count = 0
            message_count = 0
            storage_bytes = 0
            for sdir in self._sessions_root.iterdir():
                if not sdir.is_dir():
                    continue
                session_count += 1
                for path in sdir.iterdir():
                    storage_bytes += path.stat().st_size
                msgs_path = sdir / "messages.jsonl"
                if msgs_path.exists():
                    with msgs_path.open(encoding="utf-8") as f:
                        message_count += sum(1 for line in f if line.strip())
        return StoreStats(session_count=session_count, message_count=message_count, storage_bytes=storage_bytes)

    # ---- 内部 ----

    def _session_dir(self, session_id: str) -> Optional[Path]:
        # 拒绝带路径分隔符的 ID，避免越界访问
        if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            return None
        return self._sessions_root / session_id

    def _read_session(self, session_id: str) -> Optional[Session]:
        sdir = self._session_dir(session_id)
        if sdir is None:
            return None
        meta_path = sdir / "meta.json"
        if not meta_path.exists():
            return None
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), http_status=500)
        return Session(
            id=data["id"],
            name=data.get("name") or "",
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            metadata=data.get("metadata") or {},
        )

    def _write_meta(self, sdir: Path, session: Session) -> None:
        meta_path = sdir / "meta.json"
        tmp_path = sdir / f"meta.{uuid4().hex}.json.tmp"
        obj = {
            "id": session.id,
            "name": session.name,
            "created_at": _iso(session.created_at),
            "updated_at": _iso(session.updated_at),
            "metadata": session.metadata,
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), http_status=500)

    def _to_message(self, data: Dict[str, Any]) -> MessageRecord:
        token_count = data.get("token_count")
        return MessageRecord(
            id=data["id"],
            session_id=data["session_id"],
            role=data["role"],
            content=data.get("content") or "",
            model=data.get("model"),
            token_count=int(token_count) if token_count is not None else None,
            created_at=_parse_dt(data["created_at"]),
            metadata=data.get("metadata") or {},
        )
