from pydantic import BaseModel, Field


class InboundEmailIn(BaseModel):
    """Decoded email as forwarded by the mail transport."""

    sender: str = Field(default="", alias="from", max_length=320)
    to: str | list[str]
    subject: str = Field(default="", max_length=998)
    text: str = Field(default="", max_length=100_000)
    message_id: str | None = Field(default=None, max_length=128)

    model_config = {"populate_by_name": True}


class InboundEmailOut(BaseModel):
    accepted: bool
    instance_id: str | None = None


class OrganizationOut(BaseModel):
    org_id: str
    org_key: str
    access_key: str
    name: str


class AlertOut(BaseModel):
    alert_id: str
    organization: str
    body: str
    audio_url: str | None
    timestamp: int
    source: str
    nature: str
    address: str
    city: str
    latitude: float | None
    longitude: float | None
