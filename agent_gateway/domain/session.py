from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Protocol
from datetime import datetime


@dataclass
class Session:
    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    metadata: Dict[str, Any]


@dataclass
class MessageRecord:
    id: str
    session_id: str
    role: str
    content: str
    model: Optional[str]
    token_count: Optional[int]
    created_at: datetime
    metadata: Dict[str, Any]


@dataclass
class StoreStats:
    session_count: int
    message_count: int
    storage_bytes: int


class MessageStore(Protocol):
    def create_session(self, name: str, metadata: Dict[str, Any]) -> Session:
        ...

    def get_session(self, session_id: str) -> Optional[Session]:
        ...

    def list_sessions(self, limit: int = 50, offset: int = 0) -> List[Session]:
        ...

    def update_session(
        self,
        session_id: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Session]:
        ...

    def delete_session(self, session_id: str) -> bool:
        ...

    def insert_message(
        self,
        session_id: str,
        role: str,
        content: str,
        model: Optional[str] = None,
        token_count: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MessageRecord:
        ...

    def list_messages(self, session_id: str, limit: int = 50, offset: int = 0) -> List[MessageRecord]:
        ...

    def recent_messages(self, session_id: str, limit: int = 50) -> List[MessageRecord]:
        ...

    def stats(self) -> StoreStats:
        ...
