"""
Pydantic models for room endpoint requests.
Field names are snake_case in Python and camelCase on the wire.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RoomAuth(CamelModel):
    """Fields every room request carries."""
    room_id: str = Field(min_length=1)
    passkey: str = Field(min_length=1)


class JoinRequest(RoomAuth):
    username: str = Field(min_length=1)
    session_token: Optional[str] = None
    admin_code: Optional[str] = None


class ReplyTo(CamelModel):
    id: Optional[str] = None
    user: str
    text: str = Field(max_length=1000)


class SendRequest(RoomAuth):
    user: str = Field(min_length=1)
    text: str = Field(min_length=1)
    reply_to: Optional[ReplyTo] = None
    is_announcement: bool = False
    session_token: str = Field(min_length=1)


class EditRequest(RoomAuth):
    username: str = Field(min_length=1)
    message_id: str = Field(min_length=1)
    new_text: str = Field(min_length=1)
    session_token: str = Field(min_length=1)


class DeleteMessageRequest(RoomAuth):
    username: str = Field(min_length=1)
    message_id: str = Field(min_length=1)
    session_token: str = Field(min_length=1)


class PinRequest(RoomAuth):
    username: str = Field(min_length=1)
    action: Literal["pin", "unpin"]
    # The client sends the whole message; only its id is trusted
    message: Optional[dict] = None
    session_token: str = Field(min_length=1)


class AdminRequest(RoomAuth):
    admin_user: str = Field(min_length=1)
    action: Literal["kick", "deleteRoom"]
    target_user: Optional[str] = None
    session_token: str = Field(min_length=1)


class LeaveRequest(RoomAuth):
    username: str = Field(min_length=1)
    explicit: bool = True
    session_token: Optional[str] = None


class ClearRequest(RoomAuth):
    pass


class RoomSummary(BaseModel):
    """Public listing entry; never carries secrets."""
    id: str
    userCount: int


class RoomsResponse(BaseModel):
    success: bool = True
    rooms: List[RoomSummary]
