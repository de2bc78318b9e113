"""
Room Manager - passkey-protected rooms coordinated through client polling.

Owns the room registry and every state transition: joins and session tokens,
presence and typing, ownership succession, pins, and moderation.
Apart from the inactivity sweep, every operation validates first and mutates
after, under that room's lock.
"""
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from keyroom.config import Settings
from keyroom.errors import ErrorKind, RoomError
from keyroom.models import Author, Member, Message, ReplyRef, Room, count_by_author
from keyroom.security import log_security_event, normalize_username, sanitize_room_id
from keyroom.utils.code_generator import generate_message_id, generate_session_token, tokens_match

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000
SNAPSHOT_VERSION = 1


class RoomManager:
    """
    In-process registry of rooms.

    The clock returns wall-clock seconds; all stored instants are integer
    milliseconds.
    """

    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], float] = time.time):
        self.settings = settings or Settings()
        self.clock = clock
        self.rooms: Dict[str, Room] = {}
        self._registry_lock = threading.Lock()
        self._room_locks: Dict[str, threading.Lock] = {}

    # ============ HELPERS ============

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    @contextmanager
    def _room_lock(self, room_id: str) -> Iterator[None]:
        """Exclusive scope for one room id. Lock order is room, then registry."""
        with self._registry_lock:
            lock = self._room_locks.setdefault(room_id, threading.Lock())
        with lock:
            yield

    def _require_room_id(self, room_id: Optional[str]) -> str:
        rid = sanitize_room_id(room_id)
        if not rid:
            raise RoomError(ErrorKind.VALIDATION, "Invalid Room ID format.")
        return rid

    def _purge(self, room_id: str) -> None:
        with self._registry_lock:
            self.rooms.pop(room_id, None)
        logger.info(f"Room {room_id} purged")

    def _check_closing(self, room: Room, now: int) -> None:
        if not room.is_closing:
            return
        if now >= room.deletion_scheduled_at:
            self._purge(room.id)
        raise RoomError(ErrorKind.ROOM_CLOSING, "This room has been deleted.")

    def _open(self, room_id: str, passkey: Optional[str], now: int) -> Room:
        """Resolve a room for an authenticated operation."""
        room = self.rooms.get(room_id)
        if room is None or not tokens_match(room.passkey, passkey):
            log_security_event("auth_failed", {"room": room_id})
            raise RoomError(ErrorKind.AUTH_FAILED, "Authentication failed. Invalid room or passkey.")
        self._check_closing(room, now)
        return room

    def _require_username(self, username: Optional[str]) -> str:
        name = normalize_username(username)
        if name is None:
            raise RoomError(ErrorKind.VALIDATION, "Invalid username.")
        return name

    def _authenticate(self, room: Room, username: str, session_token: Optional[str]) -> Member:
        """Check that the caller is an active member holding its current session token."""
        member = room.members.get(username)
        if member is None:
            raise RoomError(ErrorKind.NOT_ACTIVE, "You are not active in this room. Please re-join.")
        if not tokens_match(member.session_token, session_token):
            log_security_event("session_conflict", {"room": room.id, "user": username})
            raise RoomError(
                ErrorKind.SESSION_CONFLICT,
                "Session conflict: this username is active in another session.",
            )
        return member

    def _post(self, room: Room, text: str, now: int, author: Optional[Author] = None,
              **extra) -> Message:
        message = Message(
            id=generate_message_id(),
            author=author or Author.system(),
            text=text,
            created_at=room.next_stamp(now),
            **extra,
        )
        room.append(message, self.settings.message_cap)
        return message

    def _validate_text(self, text: Optional[str]) -> str:
        if not text or not text.strip():
            raise RoomError(ErrorKind.VALIDATION, "Message text is required.")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise RoomError(ErrorKind.VALIDATION, "Message is too long.")
        return text

    def _remove_member(self, room: Room, username: str, now: int) -> None:
        room.members.pop(username, None)
        if username in room.pinned_by and room.withdraw_pin(username):
            self._post(room, "The pinned message was unpinned.", now)

    # ============ IDENTITY & SESSIONS ============

    def join(self, room_id: str, passkey: str, username: str,
             session_token: Optional[str] = None,
             admin_code: Optional[str] = None) -> Tuple[str, Room]:
        """
        Join (or create) a room.

        Returns the caller's session token and the room.
        """
        rid = self._require_room_id(room_id)
        name = self._require_username(username)
        if not passkey:
            raise RoomError(ErrorKind.VALIDATION, "Passkey is required.")

        with self._room_lock(rid):
            now = self._now_ms()
            room = self.rooms.get(rid)
            if room is not None and room.is_closing:
                if now < room.deletion_scheduled_at:
                    raise RoomError(ErrorKind.ROOM_CLOSING, "This room is closing.")
                self._purge(rid)
                room = None

            if room is None:
                return self._create_room(rid, passkey, name, admin_code, now)

            if not tokens_match(room.passkey, passkey):
                log_security_event("invalid_passkey", {"room": rid, "user": name})
                raise RoomError(ErrorKind.AUTH_FAILED, "Invalid passkey.")

            # Stale members must not hold their name or count as admins present.
            # A caller presenting its own token is live and exempt.
            current = room.members.get(name)
            if current is not None and tokens_match(current.session_token, session_token):
                current.last_seen_at = now
            self._sweep_inactive(room, now)

            if name in room.banned:
                log_security_event("banned_join", {"room": rid, "user": name})
                raise RoomError(ErrorKind.BANNED, "You have been banned from this room.")

            has_admin_code = tokens_match(room.admin_code, admin_code)
            is_owner = tokens_match(room.owner_token, session_token)
            member = room.members.get(name)

            if member is not None:
                if tokens_match(member.session_token, session_token):
                    member.last_seen_at = now
                    self._post(room, f"{name} has reconnected.", now)
                    return member.session_token, room
                # An admin code never takes over the owner's live session
                if not has_admin_code or name == room.creator:
                    log_security_event("session_conflict", {"room": rid, "user": name})
                    raise RoomError(
                        ErrorKind.SESSION_CONFLICT,
                        "Username is already active in this room.",
                        status_code=403,
                    )
                # Admin override always rotates the token, even for the same person.
                member.session_token = generate_session_token()
                member.is_admin = True
                member.last_seen_at = now
                self._post(room, f"{name} reclaimed their session (admin override).", now)
                logger.info(f"Admin override reclaim of {name} in room {rid}")
                return member.session_token, room

            if name == room.creator and not is_owner:
                log_security_event("creator_name_claim", {"room": rid, "user": name})
                raise RoomError(
                    ErrorKind.ENTRY_RESTRICTED,
                    "This username belongs to the room owner. Rejoin with the owner session.",
                )
            if not room.has_admin_present and not (is_owner or has_admin_code):
                raise RoomError(
                    ErrorKind.ENTRY_RESTRICTED,
                    "No admin is present in this room. Entry is restricted.",
                )

            if is_owner:
                token = room.owner_token
                room.creator = name
                text = f"{name} has restored ownership of the room."
                logger.info(f"Ownership of room {rid} restored by {name}")
            elif has_admin_code:
                token = generate_session_token()
                text = f"{name} has joined as an admin."
            else:
                token = generate_session_token()
                text = f"{name} has joined."

            room.members[name] = Member(
                username=name,
                session_token=token,
                joined_at=now,
                last_seen_at=now,
                is_admin=is_owner or has_admin_code,
            )
            self._post(room, text, now)
            return token, room

    def _create_room(self, rid: str, passkey: str, name: str,
                     admin_code: Optional[str], now: int) -> Tuple[str, Room]:
        if not admin_code:
            raise RoomError(
                ErrorKind.ENTRY_RESTRICTED,
                "This room does not exist. An admin code is required to create it.",
            )
        if self.settings.admin_code and not tokens_match(self.settings.admin_code, admin_code):
            log_security_event("invalid_creation_code", {"room": rid, "user": name})
            raise RoomError(ErrorKind.AUTH_FAILED, "Invalid admin code.")

        owner_token = generate_session_token()
        room = Room(
            id=rid,
            passkey=passkey,
            creator=name,
            owner_token=owner_token,
            admin_code=admin_code,
            created_at=now,
        )
        room.members[name] = Member(
            username=name,
            session_token=owner_token,
            joined_at=now,
            last_seen_at=now,
            is_admin=True,
        )
        self._post(room, f"Room '{rid}' created by {name}.", now)
        with self._registry_lock:
            self.rooms[rid] = room
        logger.info(f"Room {rid} created by {name}")
        return owner_token, room

    def leave(self, room_id: str, passkey: str, username: str, explicit: bool = True,
              session_token: Optional[str] = None) -> bool:
        """Leave a room. Never raises for a bad room, passkey, name or session."""
        rid = sanitize_room_id(room_id)
        username = normalize_username(username)
        if not rid or username is None:
            return False

        with self._room_lock(rid):
            room = self.rooms.get(rid)
            if room is None or not tokens_match(room.passkey, passkey):
                return False
            member = room.members.get(username)
            if member is None or not tokens_match(member.session_token, session_token):
                return False

            now = self._now_ms()
            self._remove_member(room, username, now)
            self._post(room, f"{username} has left.", now)

            if explicit and username == room.creator and room.members:
                successor = min(room.members.values(), key=lambda m: m.joined_at)
                room.creator = successor.username
                successor.is_admin = True
                self._post(room, f"{successor.username} is now the room owner.", now)
                logger.info(f"Ownership of room {rid} passed from {username} to {successor.username}")
            return True

    # ============ PRESENCE ============

    def poll(self, room_id: str, passkey: str, username: str, session_token: Optional[str],
             since: int = 0, is_typing: bool = False) -> Tuple[dict, List[str]]:
        """
        Presence bookkeeping plus the message delta since `since`.

        Returns the response payload and the usernames evicted by the sweep.
        """
        rid = self._require_room_id(room_id)
        username = self._require_username(username)

        with self._room_lock(rid):
            now = self._now_ms()
            room = self._open(rid, passkey, now)
            member = self._authenticate(room, username, session_token)

            member.last_seen_at = now
            member.is_typing = bool(is_typing)

            evicted = self._sweep_inactive(room, now)

            delta = []
            for message in room.messages:
                if message.created_at > since:
                    message.mark_read(username)
                if message.changed_since(since):
                    delta.append(message)
            delta.sort(key=lambda m: m.created_at)

            payload = {
                "success": True,
                "messages": [m.to_public() for m in delta],
                "users": list(room.members),
                "typingUsers": [
                    m.username for m in room.members.values()
                    if m.is_typing and m.username != username
                ],
                "pinnedMessage": room.pinned_message,
                "pinnedBy": list(room.pinned_by),
                "creator": room.creator,
                "admins": room.admins,
                "serverTime": max(now, room.last_stamp),
            }
            if room.is_privileged(username):
                payload["stats"] = {
                    "messageCounts": count_by_author(room.messages),
                    "memberAges": {
                        m.username: (now - m.joined_at) // 1000 for m in room.members.values()
                    },
                }
            return payload, evicted

    def _sweep_inactive(self, room: Room, now: int) -> List[str]:
        timeout_ms = int(self.settings.inactive_timeout_s * 1000)
        stale = [
            m.username for m in room.members.values()
            if now - m.last_seen_at >= timeout_ms
        ]
        for username in stale:
            self._remove_member(room, username, now)
            self._post(room, f"{username} has left (timed out).", now)
        if stale:
            logger.debug(f"Room {room.id}: timed out {stale}")
        return stale

    # ============ MESSAGES ============

    def send(self, room_id: str, passkey: str, user: str, text: str,
             reply_to: Optional[dict] = None, is_announcement: bool = False,
             session_token: Optional[str] = None) -> Message:
        rid = self._require_room_id(room_id)
        user = self._require_username(user)
        text = self._validate_text(text)

        with self._room_lock(rid):
            now = self._now_ms()
            room = self._open(rid, passkey, now)
            member = self._authenticate(room, user, session_token)
            if is_announcement and not room.is_privileged(user):
                raise RoomError(ErrorKind.FORBIDDEN, "Only admins can post announcements.")

            member.last_seen_at = now
            member.is_typing = False

            return self._post(
                room, text, now,
                author=Author.user(user),
                reply_to=ReplyRef.from_dict(reply_to),
                is_announcement=bool(is_announcement),
                mentions=room.extract_mentions(text),
            )

    def edit(self, room_id: str, passkey: str, username: str, message_id: str, new_text: str,
             session_token: Optional[str] = None) -> Message:
        rid = self._require_room_id(room_id)
        username = self._require_username(username)
        new_text = self._validate_text(new_text)

        with self._room_lock(rid):
            now = self._now_ms()
            room = self._open(rid, passkey, now)
            self._authenticate(room, username, session_token)

            message = room.find_message(message_id)
            if message is None:
                raise RoomError(ErrorKind.NOT_FOUND, "Message not found.")
            if not message.author.is_user(username):
                raise RoomError(ErrorKind.FORBIDDEN, "You can only edit your own messages.")

            message.text = new_text
            message.edited_at = room.next_stamp(now)
            message.mentions = room.extract_mentions(new_text)
            if room.pinned_message and room.pinned_message.get("id") == message.id:
                room.pinned_message = message.to_public()
            return message

    def delete_message(self, room_id: str, passkey: str, username: str, message_id: str,
                       session_token: Optional[str] = None) -> None:
        rid = self._require_room_id(room_id)
        username = self._require_username(username)

        with self._room_lock(rid):
            now = self._now_ms()
            room = self._open(rid, passkey, now)
            self._authenticate(room, username, session_token)

            message = room.find_message(message_id)
            if message is None:
                raise RoomError(ErrorKind.NOT_FOUND, "Message not found.")
            if not message.is_announcement:
                raise RoomError(ErrorKind.FORBIDDEN, "Only announcements can be deleted.")
            if username != room.creator:
                raise RoomError(ErrorKind.FORBIDDEN, "Only the room owner can delete announcements.")

            room.messages.remove(message)
            if room.pinned_message and room.pinned_message.get("id") == message_id:
                room.clear_pin()
            logger.info(f"Announcement {message_id} deleted from room {rid} by {username}")

    def clear(self, room_id: str, passkey: str) -> Message:
        """Replace the whole log with one notice. Pin state is left as is."""
        rid = self._require_room_id(room_id)

        with self._room_lock(rid):
            now = self._now_ms()
            room = self._open(rid, passkey, now)
            notice = Message(
                id=generate_message_id(),
                author=Author.system(),
                text="Chat history cleared.",
                created_at=room.next_stamp(now),
            )
            room.messages = [notice]
            logger.info(f"Room {rid} history cleared")
            return notice

    # ============ PINS ============

    def pin(self, room_id: str, passkey: str, username: str, message: Optional[dict],
            session_token: Optional[str] = None) -> Room:
        """
        Toggle a pin vote.

        Same target and already signed: withdraw. Same target, new signer:
        co-sign. Different target: replace and reset signers.
        """
        rid = self._require_room_id(room_id)
        username = self._require_username(username)
        message_id = (message or {}).get("id")
        if not message_id:
            raise RoomError(ErrorKind.VALIDATION, "Message required to pin.")

        with self._room_lock(rid):
            now = self._now_ms()
            room = self._open(rid, passkey, now)
            self._authenticate(room, username, session_token)

            current_id = room.pinned_message.get("id") if room.pinned_message else None
            if current_id == message_id:
                if username in room.pinned_by:
                    if room.withdraw_pin(username):
                        self._post(room, "The pinned message was unpinned.", now)
                else:
                    room.pinned_by.append(username)
                return room

            target = room.find_message(message_id)
            if target is None:
                raise RoomError(ErrorKind.NOT_FOUND, "Message not found.")
            room.pinned_message = target.to_public()
            room.pinned_by = [username]
            self._post(room, f"{username} pinned a message.", now)
            return room

    def unpin(self, room_id: str, passkey: str, username: str,
              session_token: Optional[str] = None) -> Room:
        rid = self._require_room_id(room_id)
        username = self._require_username(username)

        with self._room_lock(rid):
            now = self._now_ms()
            room = self._open(rid, passkey, now)
            self._authenticate(room, username, session_token)

            if username not in room.pinned_by:
                raise RoomError(ErrorKind.FORBIDDEN, "You have not pinned this message.")
            if room.withdraw_pin(username):
                self._post(room, "The pinned message was unpinned.", now)
            return room

    # ============ MODERATION ============

    def kick(self, room_id: str, passkey: str, admin_user: str, target_user: Optional[str],
             session_token: Optional[str] = None) -> None:
        """Evict and ban a regular member."""
        rid = self._require_room_id(room_id)
        admin_user = self._require_username(admin_user)
        target_user = normalize_username(target_user)
        if target_user is None:
            raise RoomError(ErrorKind.VALIDATION, "Target user is required.")

        with self._room_lock(rid):
            now = self._now_ms()
            room = self._open(rid, passkey, now)
            self._authenticate(room, admin_user, session_token)

            if not room.is_privileged(admin_user):
                raise RoomError(ErrorKind.FORBIDDEN, "Only admins can kick users.")
            if room.is_privileged(target_user):
                raise RoomError(ErrorKind.FORBIDDEN, "Cannot kick an admin or the room owner.")

            if target_user in room.members:
                self._remove_member(room, target_user, now)
            room.banned.add(target_user)
            self._post(
                room, f"{admin_user} kicked (and banned) {target_user}.", now,
                author=Author.admin_action(admin_user),
            )
            logger.info(f"{admin_user} kicked {target_user} from room {rid}")

    def delete_room(self, room_id: str, passkey: str, admin_user: str,
                    session_token: Optional[str] = None) -> int:
        """
        Schedule the room for purge after the grace window.

        Members are evicted right away. Returns the purge instant in ms.
        """
        rid = self._require_room_id(room_id)
        admin_user = self._require_username(admin_user)

        with self._room_lock(rid):
            now = self._now_ms()
            room = self._open(rid, passkey, now)
            self._authenticate(room, admin_user, session_token)

            if not room.is_privileged(admin_user):
                raise RoomError(ErrorKind.FORBIDDEN, "Only admins can delete the room.")

            room.deletion_scheduled_at = now + int(self.settings.delete_grace_s * 1000)
            room.members.clear()
            logger.info(f"Room {rid} scheduled for deletion by {admin_user}")
            return room.deletion_scheduled_at

    def purge_expired(self) -> List[str]:
        """Purge every room whose deletion grace window has elapsed."""
        with self._registry_lock:
            candidates = [rid for rid, room in self.rooms.items() if room.is_closing]

        purged = []
        for rid in candidates:
            with self._room_lock(rid):
                room = self.rooms.get(rid)
                if room is None or not room.is_closing:
                    continue
                if self._now_ms() >= room.deletion_scheduled_at:
                    self._purge(rid)
                    purged.append(rid)
        return purged

    # ============ REGISTRY ============

    def list_rooms(self) -> List[dict]:
        with self._registry_lock:
            rooms = list(self.rooms.values())
        return [
            {"id": room.id, "userCount": room.user_count}
            for room in sorted(rooms, key=lambda r: r.id)
            if not room.is_closing
        ]

    def snapshot(self) -> dict:
        """Serialize the whole registry."""
        with self._registry_lock:
            room_ids = list(self.rooms)

        rooms = {}
        for rid in room_ids:
            with self._room_lock(rid):
                room = self.rooms.get(rid)
                if room is not None:
                    rooms[rid] = room.to_dict()
        return {"version": SNAPSHOT_VERSION, "rooms": rooms}

    def restore(self, payload: dict) -> int:
        """Replace the registry from a snapshot. Returns the number of rooms loaded."""
        if payload.get("version") != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported snapshot version: {payload.get('version')!r}")
        rooms = {rid: Room.from_dict(data) for rid, data in payload.get("rooms", {}).items()}
        with self._registry_lock:
            self.rooms = rooms
            self._room_locks = {}
        return len(rooms)
