"""Tests for sending, editing, deleting, clearing and pin voting."""
import pytest

from keyroom.config import Settings
from keyroom.errors import ErrorKind, RoomError
from keyroom.models import AuthorKind
from keyroom.room_manager import MAX_MESSAGE_LENGTH, RoomManager

from conftest import ADMIN_CODE, PASSKEY, ROOM


def assert_pin_invariant(room):
    assert (room.pinned_message is None) == (room.pinned_by == [])


class TestSend:

    def test_length_limit(self, manager, alice):
        manager.send(ROOM, PASSKEY, "alice", "x" * MAX_MESSAGE_LENGTH, session_token=alice)
        with pytest.raises(RoomError) as exc:
            manager.send(ROOM, PASSKEY, "alice", "x" * (MAX_MESSAGE_LENGTH + 1), session_token=alice)
        assert exc.value.kind == ErrorKind.VALIDATION

    def test_blank_text_rejected(self, manager, alice):
        with pytest.raises(RoomError) as exc:
            manager.send(ROOM, PASSKEY, "alice", "   ", session_token=alice)
        assert exc.value.kind == ErrorKind.VALIDATION

    def test_wrong_passkey(self, manager, alice):
        with pytest.raises(RoomError) as exc:
            manager.send(ROOM, "nope", "alice", "hi", session_token=alice)
        assert exc.value.kind == ErrorKind.AUTH_FAILED

    def test_session_token_must_match(self, manager, alice, bob):
        with pytest.raises(RoomError) as exc:
            manager.send(ROOM, PASSKEY, "bob", "hi", session_token=alice)
        assert exc.value.kind == ErrorKind.SESSION_CONFLICT
        manager.send(ROOM, PASSKEY, "bob", "hi", session_token=bob)

    def test_passkey_alone_cannot_send(self, manager, alice, bob):
        with pytest.raises(RoomError) as exc:
            manager.send(ROOM, PASSKEY, "bob", "impersonated")
        assert exc.value.kind == ErrorKind.SESSION_CONFLICT
        assert exc.value.status_code == 401

        with pytest.raises(RoomError) as exc:
            manager.send(ROOM, PASSKEY, "outsider", "hi", session_token=bob)
        assert exc.value.kind == ErrorKind.NOT_ACTIVE
        assert [m.text for m in manager.rooms[ROOM].messages][-1] == "bob has joined."

    def test_username_is_normalized(self, manager, alice, bob):
        message = manager.send(ROOM, PASSKEY, "  bob ", "padded", session_token=bob)
        assert message.author.name == "bob"

    def test_retention_cap(self, settings, clock):
        manager = RoomManager(Settings(data_dir=settings.data_dir, message_cap=5), clock=clock)
        alice, _ = manager.join(ROOM, PASSKEY, "alice", admin_code=ADMIN_CODE)
        for i in range(10):
            manager.send(ROOM, PASSKEY, "alice", f"msg {i}", session_token=alice)
        assert [m.text for m in manager.rooms[ROOM].messages] == [f"msg {i}" for i in range(5, 10)]

    def test_mentions_and_reply(self, manager, alice, bob):
        message = manager.send(
            ROOM, PASSKEY, "bob", "@alice and @bob, not @ghost @alice",
            reply_to={"id": "m1", "user": "alice", "text": "question"},
            session_token=bob,
        )
        assert message.mentions == ["alice", "bob"]
        public = message.to_public()
        assert public["replyTo"] == {"id": "m1", "user": "alice", "text": "question"}
        assert public["authorKind"] == "user"

    def test_announcements_need_admin(self, manager, alice, bob):
        with pytest.raises(RoomError) as exc:
            manager.send(ROOM, PASSKEY, "bob", "news", is_announcement=True, session_token=bob)
        assert exc.value.kind == ErrorKind.FORBIDDEN

        message = manager.send(ROOM, PASSKEY, "alice", "news", is_announcement=True, session_token=alice)
        assert message.is_announcement


class TestEdit:

    def test_only_author_edits(self, manager, alice, bob):
        message = manager.send(ROOM, PASSKEY, "bob", "mine", session_token=bob)
        with pytest.raises(RoomError) as exc:
            manager.edit(ROOM, PASSKEY, "alice", message.id, "hijacked", session_token=alice)
        assert exc.value.kind == ErrorKind.FORBIDDEN
        assert message.text == "mine"

    def test_system_messages_not_editable(self, manager, alice):
        system = manager.rooms[ROOM].messages[0]
        assert system.author.kind == AuthorKind.SYSTEM
        with pytest.raises(RoomError) as exc:
            manager.edit(ROOM, PASSKEY, "alice", system.id, "rewritten", session_token=alice)
        assert exc.value.kind == ErrorKind.FORBIDDEN

    def test_missing_message(self, manager, alice):
        with pytest.raises(RoomError) as exc:
            manager.edit(ROOM, PASSKEY, "alice", "nope", "text", session_token=alice)
        assert exc.value.kind == ErrorKind.NOT_FOUND

    def test_edit_keeps_receipts(self, manager, alice, bob):
        message = manager.send(ROOM, PASSKEY, "bob", "hi", session_token=bob)
        manager.poll(ROOM, PASSKEY, "alice", alice, since=0)
        manager.edit(ROOM, PASSKEY, "bob", message.id, "hi there", session_token=bob)
        assert message.read_by == ["alice"]
        assert message.edited_at > message.created_at

    def test_edit_refreshes_pin(self, manager, alice, bob):
        message = manager.send(ROOM, PASSKEY, "bob", "typo", session_token=bob)
        manager.pin(ROOM, PASSKEY, "alice", {"id": message.id}, session_token=alice)
        manager.edit(ROOM, PASSKEY, "bob", message.id, "fixed", session_token=bob)
        assert manager.rooms[ROOM].pinned_message["text"] == "fixed"


class TestDeleteMessage:

    def test_regular_messages_cannot_be_deleted(self, manager, alice, bob):
        message = manager.send(ROOM, PASSKEY, "bob", "keep", session_token=bob)
        with pytest.raises(RoomError) as exc:
            manager.delete_message(ROOM, PASSKEY, "alice", message.id, session_token=alice)
        assert exc.value.kind == ErrorKind.FORBIDDEN

    def test_only_creator_deletes_announcements(self, manager, alice, bob):
        dave, _ = manager.join(ROOM, PASSKEY, "dave", admin_code=ADMIN_CODE)
        message = manager.send(ROOM, PASSKEY, "dave", "news", is_announcement=True, session_token=dave)
        with pytest.raises(RoomError) as exc:
            manager.delete_message(ROOM, PASSKEY, "dave", message.id, session_token=dave)
        assert exc.value.kind == ErrorKind.FORBIDDEN

        manager.delete_message(ROOM, PASSKEY, "alice", message.id, session_token=alice)
        assert manager.rooms[ROOM].find_message(message.id) is None

    def test_deleting_pinned_announcement_clears_pin(self, manager, alice):
        message = manager.send(ROOM, PASSKEY, "alice", "news", is_announcement=True, session_token=alice)
        manager.pin(ROOM, PASSKEY, "alice", {"id": message.id}, session_token=alice)
        manager.delete_message(ROOM, PASSKEY, "alice", message.id, session_token=alice)
        room = manager.rooms[ROOM]
        assert room.pinned_message is None
        assert_pin_invariant(room)

    def test_missing(self, manager, alice):
        with pytest.raises(RoomError) as exc:
            manager.delete_message(ROOM, PASSKEY, "alice", "nope", session_token=alice)
        assert exc.value.kind == ErrorKind.NOT_FOUND


class TestPins:

    def test_toggle_sequence(self, manager, alice, bob):
        m = manager.send(ROOM, PASSKEY, "bob", "important", session_token=bob)
        room = manager.rooms[ROOM]

        manager.pin(ROOM, PASSKEY, "alice", {"id": m.id}, session_token=alice)
        assert room.pinned_by == ["alice"]
        assert room.pinned_message["id"] == m.id
        assert_pin_invariant(room)

        manager.pin(ROOM, PASSKEY, "alice", {"id": m.id}, session_token=alice)
        assert room.pinned_message is None
        assert_pin_invariant(room)

        manager.pin(ROOM, PASSKEY, "alice", {"id": m.id}, session_token=alice)
        manager.pin(ROOM, PASSKEY, "bob", {"id": m.id}, session_token=bob)
        assert room.pinned_by == ["alice", "bob"]
        assert_pin_invariant(room)

        manager.unpin(ROOM, PASSKEY, "bob", session_token=bob)
        assert room.pinned_by == ["alice"]
        assert_pin_invariant(room)

        manager.unpin(ROOM, PASSKEY, "alice", session_token=alice)
        assert room.pinned_message is None
        assert_pin_invariant(room)

    def test_pinning_other_message_resets_signers(self, manager, alice, bob):
        first = manager.send(ROOM, PASSKEY, "bob", "first", session_token=bob)
        second = manager.send(ROOM, PASSKEY, "bob", "second", session_token=bob)
        manager.pin(ROOM, PASSKEY, "alice", {"id": first.id}, session_token=alice)
        manager.pin(ROOM, PASSKEY, "bob", {"id": first.id}, session_token=bob)

        manager.pin(ROOM, PASSKEY, "bob", {"id": second.id}, session_token=bob)
        room = manager.rooms[ROOM]
        assert room.pinned_message["id"] == second.id
        assert room.pinned_by == ["bob"]

    def test_unpin_without_vote(self, manager, alice, bob):
        m = manager.send(ROOM, PASSKEY, "bob", "x", session_token=bob)
        manager.pin(ROOM, PASSKEY, "alice", {"id": m.id}, session_token=alice)
        with pytest.raises(RoomError) as exc:
            manager.unpin(ROOM, PASSKEY, "bob", session_token=bob)
        assert exc.value.kind == ErrorKind.FORBIDDEN
        assert manager.rooms[ROOM].pinned_by == ["alice"]

    def test_unpin_with_nothing_pinned(self, manager, alice):
        with pytest.raises(RoomError) as exc:
            manager.unpin(ROOM, PASSKEY, "alice", session_token=alice)
        assert exc.value.kind == ErrorKind.FORBIDDEN

    def test_pin_needs_message_id(self, manager, alice):
        with pytest.raises(RoomError) as exc:
            manager.pin(ROOM, PASSKEY, "alice", {"text": "no id"}, session_token=alice)
        assert exc.value.kind == ErrorKind.VALIDATION

    def test_pin_unknown_message(self, manager, alice):
        with pytest.raises(RoomError) as exc:
            manager.pin(ROOM, PASSKEY, "alice", {"id": "missing"}, session_token=alice)
        assert exc.value.kind == ErrorKind.NOT_FOUND


def test_clear_keeps_pin(manager, alice, bob):
    m = manager.send(ROOM, PASSKEY, "bob", "pinned", session_token=bob)
    manager.pin(ROOM, PASSKEY, "alice", {"id": m.id}, session_token=alice)

    notice = manager.clear(ROOM, PASSKEY)
    room = manager.rooms[ROOM]
    assert room.messages == [notice]
    assert notice.text == "Chat history cleared."
    assert notice.author.kind == AuthorKind.SYSTEM
    assert room.pinned_message["id"] == m.id
    assert room.pinned_by == ["alice"]


def test_clear_wrong_passkey(manager, alice):
    with pytest.raises(RoomError) as exc:
        manager.clear(ROOM, "nope")
    assert exc.value.kind == ErrorKind.AUTH_FAILED
