# socialbank/transport/schemas.py
from pydantic import BaseModel, ConfigDict, Field


class USSDRequest(BaseModel):
    """USSD gateway callback (form or JSON body)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    session_id: str = Field(alias="sessionId", min_length=1, max_length=128)
    phone_number: str = Field(alias="phoneNumber", min_length=1, max_length=32)
    text: str = Field(default="", max_length=512)
    service_code: str | None = Field(default=None, alias="serviceCode", max_length=32)
    network_code: str | None = Field(default=None, alias="networkCode", max_length=32)

    def to_raw(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class USSDEndRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    session_id: str = Field(alias="sessionId", min_length=1, max_length=128)
    phone_number: str | None = Field(default=None, alias="phoneNumber", max_length=32)


class USSDResponse(BaseModel):
    message: str
    type: str  # "CON" | "END"


class SessionView(BaseModel):
    id: str
    channel: str
    owner: str
    state: str
    status: str
    conversation_id: str | None = None
    version: int
    created_at: str
    updated_at: str


class CleanupResult(BaseModel):
    sessions_expired: dict[str, int]
    processed_messages_deleted: int
