from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SendRequest(BaseModel):
    """
    Native capture payload for POST /send:

      { "to": "+15551234567", "from": "MyApp", "body": "Your code is 1234", "tags": ["otp"] }

    ``Message`` is accepted as a fallback for ``body`` because that is the
    field name some Twilio-style clients send. ``null`` counts as absent.
    """

    model_config = ConfigDict(populate_by_name=True)

    to: str = ""
    from_: str = Field(default="", alias="from")
    body: str = ""
    tags: list[str] = Field(default_factory=list)
    message: str = Field(default="", alias="Message")

    @field_validator("to", "from_", "body", "message", mode="before")
    @classmethod
    def _null_string(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("tags", mode="before")
    @classmethod
    def _null_tags(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def effective_body(self) -> str:
        if not self.body and self.message:
            return self.message
        return self.body


class TwilioSendRequest(BaseModel):
    """Form fields of Twilio's Create Message call."""

    model_config = ConfigDict(populate_by_name=True)

    to: str = Field(default="", alias="To")
    from_: str = Field(default="", alias="From")
    body: str = Field(default="", alias="Body")
