"""
Decoding of tagged commands received on the server event stream.

Expected payloads:
{"type": "open_url", "url": "...", "requestId": "...", "userId": "..."}
{"type": "connected"}
"""

import json
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class OpenUrlCommand(BaseModel):
    """Request to generate an affiliate link for a product URL."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["open_url"] = "open_url"
    url: str = Field(min_length=1)
    # Opaque identifiers, passed through unchanged
    request_id: Any = Field(default=None, alias="requestId")
    user_id: Any = Field(default=None, alias="userId")


class ConnectedCommand(BaseModel):
    """Handshake acknowledgment sent by the server after connecting."""
    type: Literal["connected"] = "connected"


Command = Union[OpenUrlCommand, ConnectedCommand]

COMMAND_TYPES = {
    "open_url": OpenUrlCommand,
    "connected": ConnectedCommand,
}


def parse_command(raw: str) -> Optional[Command]:
    """
    Decode one stream payload into a command.

    Returns None for malformed JSON, non-object payloads, unknown tags and
    payloads missing required fields.
    """
    try:
        data = json.loads(raw)
    except ValueError:
        return None

    if not isinstance(data, dict):
        return None

    model = COMMAND_TYPES.get(data.get("type"))
    if model is None:
        return None

    try:
        return model.model_validate(data)
    except ValidationError:
        return None
