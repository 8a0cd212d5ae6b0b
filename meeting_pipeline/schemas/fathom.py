from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class FathomModel(BaseModel):
    # Fathom adds fields without notice; keep them instead of failing validation.
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class FathomPerson(FathomModel):
    name: str | None = None
    email: str | None = None
    team: str | None = None


class FathomInvitee(FathomModel):
    name: str | None = None
    email: str | None = None
    email_domain: str | None = None
    is_external: bool | None = None


class FathomParticipant(FathomModel):
    name: str | None = None
    email: str | None = None
    is_host: bool = False


class FathomActionItemPayload(FathomModel):
    description: str | None = Field(
        default=None,
        validation_alias=AliasChoices("description", "title", "text"),
    )
    user_generated: bool = False
    completed: bool = False
    recording_timestamp: str | None = None
    recording_playback_url: str | None = None
    assignee: FathomPerson | None = None


class FathomKeyMoment(FathomModel):
    timestamp: float | None = None
    description: str | None = None
    type: str | None = None


class FathomSentiment(FathomModel):
    score: float | None = None
    label: str | None = None


class FathomTalkTime(FathomModel):
    rep_percentage: float | None = None
    customer_percentage: float | None = None


class FathomAnalytics(FathomModel):
    sentiment: FathomSentiment | None = None
    talk_time_analysis: FathomTalkTime | None = None
    key_moments: list[FathomKeyMoment] = Field(default_factory=list)

    @field_validator("key_moments", mode="before")
    @classmethod
    def normalize_key_moments(cls, value: Any) -> Any:
        return value or []


class FathomCall(FathomModel):
    recording_id: str = Field(validation_alias=AliasChoices("recording_id", "recordingId", "id"))
    title: str | None = None
    meeting_title: str | None = None
    url: str | None = None
    share_url: str | None = None
    created_at: datetime | None = None
    scheduled_start_time: datetime | None = None
    scheduled_end_time: datetime | None = None
    recording_start_time: datetime | None = None
    recording_end_time: datetime | None = None
    recorded_by: FathomPerson | None = None
    host_email: str | None = None
    transcript: Any = None
    transcript_language: str | None = None
    default_summary: Any = None
    summary: Any = None
    calendar_invitees: list[FathomInvitee] = Field(default_factory=list)
    calendar_invitees_domains_type: str | None = None
    participants: list[FathomParticipant] = Field(default_factory=list)
    action_items: list[FathomActionItemPayload] = Field(default_factory=list)

    @field_validator("recording_id", mode="before")
    @classmethod
    def coerce_recording_id(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, int | float):
            return str(int(value))
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("recording_id")
    @classmethod
    def require_recording_id(cls, value: str) -> str:
        if not value:
            raise ValueError("recording_id must not be empty")
        return value

    @field_validator("calendar_invitees", "participants", "action_items", mode="before")
    @classmethod
    def normalize_lists(cls, value: Any) -> Any:
        return value or []

    @property
    def start_time(self) -> datetime | None:
        return self.recording_start_time or self.scheduled_start_time

    @property
    def end_time(self) -> datetime | None:
        return self.recording_end_time or self.scheduled_end_time

    @property
    def owner_email(self) -> str | None:
        if self.recorded_by and self.recorded_by.email:
            return self.recorded_by.email
        return self.host_email
