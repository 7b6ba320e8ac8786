"""
Per-platform metadata shapes.

Raw platform payloads are validated into one of these variants at the
adapter boundary; the ``platform`` field is the discriminator.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _PlatformMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class SlackIdentityMetadata(_PlatformMetadata):
    platform: Literal["slack"] = "slack"
    team_id: str | None = None
    is_bot: bool = False
    is_app_user: bool = False
    is_admin: bool = False
    deleted: bool = False
    timezone: str | None = None
    title: str | None = None


class GmailIdentityMetadata(_PlatformMetadata):
    platform: Literal["gmail"] = "gmail"
    resource_name: str | None = None
    organization: str | None = None
    phone_numbers: list[str] = Field(default_factory=list)
    # "contacts" when it came from the People API, "message" when seen only as a sender
    source: Literal["contacts", "message"] = "contacts"


IdentityMetadata = Annotated[
    SlackIdentityMetadata | GmailIdentityMetadata, Field(discriminator="platform")
]


class SlackMessageMetadata(_PlatformMetadata):
    platform: Literal["slack"] = "slack"
    channel_id: str
    ts: str
    thread_ts: str | None = None
    channel_type: str | None = None


class GmailMessageMetadata(_PlatformMetadata):
    platform: Literal["gmail"] = "gmail"
    label_ids: list[str] = Field(default_factory=list)
    snippet: str | None = None
    history_id: str | None = None
    message_id_header: str | None = None


MessageMetadata = Annotated[
    SlackMessageMetadata | GmailMessageMetadata, Field(discriminator="platform")
]

_identity_metadata_adapter: TypeAdapter = TypeAdapter(IdentityMetadata)
_message_metadata_adapter: TypeAdapter = TypeAdapter(MessageMetadata)


def parse_identity_metadata(raw: dict[str, Any] | None):
    """Validate a stored/raw identity metadata dict; empty input yields None."""
    if not raw:
        return None
    return _identity_metadata_adapter.validate_python(raw)


def parse_message_metadata(raw: dict[str, Any] | None):
    if not raw:
        return None
    return _message_metadata_adapter.validate_python(raw)


def dump_metadata(metadata: BaseModel | None) -> dict[str, Any]:
    return metadata.model_dump(mode="json") if metadata is not None else {}
