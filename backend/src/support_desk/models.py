from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ConversationStatus = Literal["ai-handled", "human-handled", "closed"]
MessageRole = Literal["user", "assistant"]
ReplyKind = Literal["text", "document", "human_handoff"]
DeliveryState = Literal["sent", "failed", "skipped"]

NOTIFICATION_HELP_NEEDED = "help_needed"
NOTIFICATION_ORDER_CONFIRMED = "order_confirmed"
NOTIFICATION_SYSTEM = "system"


class StoredRecord(BaseModel):
    """Base for JSON documents persisted in the key-value store."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Message(StoredRecord):
    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    role: MessageRole
    content: str
    timestamp: int
    sent_by: str | None = Field(default=None, alias="sentBy")


class ConversationMetadata(StoredRecord):
    status: ConversationStatus = "ai-handled"
    handled_by: str = Field(default="ai-agent", alias="handledBy")
    created_at: int = Field(alias="createdAt")
    last_updated: int = Field(alias="lastUpdated")


class Notification(StoredRecord):
    id: str
    type: str
    title: str
    body: str
    user_id: str | None = Field(default=None, alias="userId")
    timestamp: int
    urgent: bool | None = None
    delivered_at: int | None = Field(default=None, alias="deliveredAt")


class ConversationSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    last_message: str = Field(default="", alias="lastMessage")
    last_role: str = Field(default="unknown", alias="lastRole")
    message_count: int = Field(alias="messageCount")
    last_timestamp: int = Field(alias="lastTimestamp")
    last_updated: int = Field(alias="lastUpdated")
    status: ConversationStatus
    handled_by: str = Field(alias="handledBy")


class ConversationListResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversations: list[ConversationSummary]
    total_count: int = Field(alias="totalCount")


class ConversationDetailResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    messages: list[Message]
    metadata: ConversationMetadata


class StatusUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    agent_id: str | None = Field(default=None, alias="agentId", max_length=128)
    status: ConversationStatus | None = None

    @field_validator("agent_id")
    @classmethod
    def _normalize_agent_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class StatusUpdateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    status: ConversationStatus
    handled_by: str = Field(alias="handledBy")


class AgentMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    agent_id: str | None = Field(default=None, alias="agentId", max_length=128)
    message: str | None = Field(default=None, max_length=4096)

    @field_validator("agent_id", "message")
    @classmethod
    def _normalize_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class AgentMessageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    message: Message
    status: Literal["sent"] = "sent"
    delivery_state: DeliveryState = Field(alias="deliveryState")


class ClearConversationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    status: ConversationStatus


class PendingNotificationsResponse(BaseModel):
    notifications: list[Notification]
    count: int


class MarkReceivedRequest(BaseModel):
    ids: list[str] | None = None


class MarkReceivedResponse(BaseModel):
    success: bool
    marked: int


class TestNotificationRequest(BaseModel):
    type: str = NOTIFICATION_HELP_NEEDED


class TestNotificationResponse(BaseModel):
    success: bool
    notification: Notification


class EscalationSweepResponse(BaseModel):
    success: bool
    checked: int
    raised: int


class EmailRecipients(BaseModel):
    help_needed: list[str] = Field(default_factory=list)
    order_confirmed: list[str] = Field(default_factory=list)
    all: list[str] = Field(default_factory=list)

    @field_validator("help_needed", "order_confirmed", "all")
    @classmethod
    def _normalize_addresses(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for address in value:
            item = address.strip().lower()
            if not item:
                continue
            if "@" not in item:
                raise ValueError(f"invalid email address: {address}")
            if item not in normalized:
                normalized.append(item)
        return normalized


class EmailRecipientsDocument(BaseModel):
    notifications: EmailRecipients = Field(default_factory=EmailRecipients)


class DemoDataRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(default=None, alias="userId", max_length=128)


class DemoDataResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    user_id: str = Field(alias="userId")
    message_count: int = Field(alias="messageCount")


class InboundWebhookResponse(BaseModel):
    accepted: bool
    processed: int
