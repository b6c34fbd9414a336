from __future__ import annotations

from typing import ClassVar, Literal

from pydantic import BaseModel, ConfigDict, model_validator

WaitStatus = Literal["messages_received", "timeout", "no_messages"]


class ToolErrorInfo(BaseModel):
    code: str
    message: str


class ToolOutputBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    error: ToolErrorInfo | None = None

    required_on_success: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="after")
    def _validate_required_on_success(self) -> ToolOutputBase:
        if self.error is not None:
            return self
        for field in self.required_on_success:
            if getattr(self, field) is None:
                raise ValueError(f"Missing required field: {field}")
        return self


class WaitMessageInfo(BaseModel):
    room: str
    roomId: str
    sender: str
    body: str
    eventId: str
    timestamp: str


class RoomInfoModel(BaseModel):
    roomId: str
    name: str
    isDirect: bool
    memberCount: int


class RoomMessageInfo(BaseModel):
    eventId: str
    sender: str
    msgtype: str
    body: str
    timestamp: str
    replyToEventId: str | None = None
    threadRootEventId: str | None = None


class ActiveUserInfo(BaseModel):
    userId: str
    messageCount: int


class PingOutput(ToolOutputBase):
    required_on_success = ("ok", "version")

    ok: bool | None = None
    version: str | None = None


class WaitForMessagesOutput(ToolOutputBase):
    required_on_success = ("status", "messageCount", "messages")

    status: WaitStatus | None = None
    messageCount: int | None = None
    messages: list[WaitMessageInfo] | None = None
    since: str | None = None


class JoinedRoomsOutput(ToolOutputBase):
    required_on_success = ("rooms", "count")

    rooms: list[RoomInfoModel] | None = None
    count: int | None = None


class RoomMessagesOutput(ToolOutputBase):
    required_on_success = ("roomId", "room", "messages", "count")

    roomId: str | None = None
    room: str | None = None
    messages: list[RoomMessageInfo] | None = None
    count: int | None = None


class MessagesByDateOutput(ToolOutputBase):
    required_on_success = ("roomId", "room", "startDate", "endDate", "messages", "count")

    roomId: str | None = None
    room: str | None = None
    startDate: str | None = None
    endDate: str | None = None
    messages: list[RoomMessageInfo] | None = None
    count: int | None = None


class ActiveUsersOutput(ToolOutputBase):
    required_on_success = ("roomId", "room", "users", "count")

    roomId: str | None = None
    room: str | None = None
    users: list[ActiveUserInfo] | None = None
    count: int | None = None


class SendMessageOutput(ToolOutputBase):
    required_on_success = ("roomId", "eventId")

    roomId: str | None = None
    eventId: str | None = None


class UserProfileOutput(ToolOutputBase):
    required_on_success = ("userId",)

    userId: str | None = None
    displayName: str | None = None
    avatarUrl: str | None = None


class PresenceOutput(ToolOutputBase):
    required_on_success = ("userId", "presence")

    userId: str | None = None
    presence: str | None = None
    lastActiveAgo: int | None = None
    currentlyActive: bool | None = None
    statusMsg: str | None = None
