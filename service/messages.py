import datetime
import uuid
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from ingest.models import DiscoveredFile


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class BaseMessage(BaseModel):
    """
    Fields shared by all ingestion queue messages.

    Messages are immutable. On the wire they are JSON with camelCase
    keys; in Python they use snake_case attributes.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str = Field(default_factory=new_message_id)
    run_id: str
    chain_slug: str
    created_at: datetime.datetime = Field(default_factory=utcnow)


class ExpandMessage(BaseMessage):
    """A fetched ZIP archive waiting to be expanded into parse messages."""

    type: Literal["expand"] = "expand"
    storage_key: str
    file: DiscoveredFile


class ParseMessage(BaseMessage):
    """A single parseable file, either fetched directly or from an archive."""

    type: Literal["parse"] = "parse"
    storage_key: str
    file: DiscoveredFile
    inner_filename: Optional[str] = None
    hash: str

    @property
    def filename(self) -> str:
        return self.inner_filename or self.file.filename

    @property
    def dedup_key(self) -> tuple[str, ...]:
        if self.inner_filename:
            return (self.run_id, self.inner_filename, self.hash)
        return (self.run_id, self.storage_key)


QueueMessage = Annotated[
    Union[ExpandMessage, ParseMessage],
    Field(discriminator="type"),
]

_message_adapter = TypeAdapter(QueueMessage)


def encode_message(msg: ExpandMessage | ParseMessage) -> str:
    return msg.model_dump_json(by_alias=True)


def decode_message(data: str | bytes) -> ExpandMessage | ParseMessage:
    """
    Decode a queue message from its JSON form.

    Raises:
        pydantic.ValidationError: If the payload is not a known message.
    """
    return _message_adapter.validate_json(data)
