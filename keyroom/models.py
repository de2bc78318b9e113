"""
Domain model for rooms, members and messages.
Plain dataclasses with dict (de)serialization for snapshots and the wire.
"""
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

SYSTEM_NAME = "System"
MENTION_PATTERN = re.compile(r'@([A-Za-z0-9_.-]+)')


class AuthorKind(str, Enum):
    USER = "user"
    SYSTEM = "system"
    ADMIN_ACTION = "admin_action"


@dataclass(frozen=True)
class Author:
    """Who wrote a message: a member, the room itself, or an admin acting on the room."""
    kind: AuthorKind
    name: Optional[str] = None

    @classmethod
    def user(cls, name: str) -> "Author":
        return cls(AuthorKind.USER, name)

    @classmethod
    def system(cls) -> "Author":
        return cls(AuthorKind.SYSTEM)

    @classmethod
    def admin_action(cls, name: str) -> "Author":
        return cls(AuthorKind.ADMIN_ACTION, name)

    def is_user(self, name: str) -> bool:
        return self.kind == AuthorKind.USER and self.name == name

    @property
    def display_name(self) -> str:
        if self.kind == AuthorKind.SYSTEM:
            return SYSTEM_NAME
        return self.name or SYSTEM_NAME

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict) -> "Author":
        return cls(AuthorKind(data["kind"]), data.get("name"))


@dataclass
class ReplyRef:
    id: Optional[str]
    user: str
    text: str

    def to_dict(self) -> dict:
        return {"id": self.id, "user": self.user, "text": self.text}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ReplyRef"]:
        if not data:
            return None
        return cls(id=data.get("id"), user=data.get("user", ""), text=data.get("text", ""))


@dataclass
class Message:
    id: str
    author: Author
    text: str
    created_at: int
    edited_at: Optional[int] = None
    reply_to: Optional[ReplyRef] = None
    is_announcement: bool = False
    read_by: List[str] = field(default_factory=list)
    mentions: List[str] = field(default_factory=list)

    def mark_read(self, username: str) -> None:
        if username not in self.read_by:
            self.read_by.append(username)

    def changed_since(self, since: int) -> bool:
        if self.created_at > since:
            return True
        return self.edited_at is not None and self.edited_at > since

    def to_public(self) -> dict:
        """Wire form sent to clients."""
        data = {
            "id": self.id,
            "user": self.author.display_name,
            "authorKind": self.author.kind.value,
            "text": self.text,
            "timestamp": self.created_at,
            "isAnnouncement": self.is_announcement,
            "readBy": list(self.read_by),
            "mentions": list(self.mentions),
        }
        if self.edited_at is not None:
            data["editedAt"] = self.edited_at
        if self.reply_to is not None:
            data["replyTo"] = self.reply_to.to_dict()
        return data

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "author": self.author.to_dict(),
            "text": self.text,
            "created_at": self.created_at,
            "edited_at": self.edited_at,
            "reply_to": self.reply_to.to_dict() if self.reply_to else None,
            "is_announcement": self.is_announcement,
            "read_by": list(self.read_by),
            "mentions": list(self.mentions),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=data["id"],
            author=Author.from_dict(data["author"]),
            text=data["text"],
            created_at=int(data["created_at"]),
            edited_at=data.get("edited_at"),
            reply_to=ReplyRef.from_dict(data.get("reply_to")),
            is_announcement=bool(data.get("is_announcement", False)),
            read_by=list(data.get("read_by", [])),
            mentions=list(data.get("mentions", [])),
        )


@dataclass
class Member:
    username: str
    session_token: str
    joined_at: int
    last_seen_at: int
    is_admin: bool = False
    is_typing: bool = False

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "session_token": self.session_token,
            "joined_at": self.joined_at,
            "last_seen_at": self.last_seen_at,
            "is_admin": self.is_admin,
            "is_typing": self.is_typing,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Member":
        return cls(**data)


@dataclass
class Room:
    """A single passkey-protected room. Mutated only by RoomManager."""
    id: str
    passkey: str
    creator: Optional[str]
    owner_token: str
    admin_code: Optional[str]
    created_at: int
    members: Dict[str, Member] = field(default_factory=dict)
    messages: List[Message] = field(default_factory=list)
    pinned_message: Optional[dict] = None
    pinned_by: List[str] = field(default_factory=list)
    banned: set = field(default_factory=set)
    deletion_scheduled_at: Optional[int] = None
    last_stamp: int = 0

    @property
    def user_count(self) -> int:
        return len(self.members)

    @property
    def is_closing(self) -> bool:
        return self.deletion_scheduled_at is not None

    @property
    def admins(self) -> List[str]:
        return [m.username for m in self.members.values() if m.is_admin]

    @property
    def has_admin_present(self) -> bool:
        return any(m.is_admin for m in self.members.values())

    def is_privileged(self, username: str) -> bool:
        """Creator or admin member."""
        if username and username == self.creator:
            return True
        member = self.members.get(username)
        return member is not None and member.is_admin

    def next_stamp(self, now_ms: int) -> int:
        """Strictly increasing millisecond timestamp for this room."""
        self.last_stamp = max(now_ms, self.last_stamp + 1)
        return self.last_stamp

    def find_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def append(self, message: Message, cap: int) -> None:
        self.messages.append(message)
        if len(self.messages) > cap:
            del self.messages[:len(self.messages) - cap]

    def extract_mentions(self, text: str) -> List[str]:
        known = set(self.members)
        if self.creator:
            known.add(self.creator)
        found = []
        for token in MENTION_PATTERN.findall(text):
            if token in known and token not in found:
                found.append(token)
        return found

    def clear_pin(self) -> None:
        self.pinned_message = None
        self.pinned_by = []

    def withdraw_pin(self, username: str) -> bool:
        """Remove one co-signer; returns True if that cleared the pin."""
        if username in self.pinned_by:
            self.pinned_by.remove(username)
        if not self.pinned_by:
            was_pinned = self.pinned_message is not None
            self.clear_pin()
            return was_pinned
        return False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "passkey": self.passkey,
            "creator": self.creator,
            "owner_token": self.owner_token,
            "admin_code": self.admin_code,
            "created_at": self.created_at,
            "members": [m.to_dict() for m in self.members.values()],
            "messages": [m.to_dict() for m in self.messages],
            "pinned_message": self.pinned_message,
            "pinned_by": list(self.pinned_by),
            "banned": sorted(self.banned),
            "deletion_scheduled_at": self.deletion_scheduled_at,
            "last_stamp": self.last_stamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Room":
        members = [Member.from_dict(m) for m in data.get("members", [])]
        return cls(
            id=data["id"],
            passkey=data["passkey"],
            creator=data.get("creator"),
            owner_token=data["owner_token"],
            admin_code=data.get("admin_code"),
            created_at=int(data["created_at"]),
            members={m.username: m for m in members},
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            pinned_message=data.get("pinned_message"),
            pinned_by=list(data.get("pinned_by", [])),
            banned=set(data.get("banned", [])),
            deletion_scheduled_at=data.get("deletion_scheduled_at"),
            last_stamp=int(data.get("last_stamp", 0)),
        )


def count_by_author(messages: Iterable[Message]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for message in messages:
        if message.author.kind != AuthorKind.USER:
            continue
        counts[message.author.name] = counts.get(message.author.name, 0) + 1
    return counts
