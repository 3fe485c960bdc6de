"""Job payload schemas.

Producers may send camelCase wire keys (``provisionId``) or snake_case
names; both validate to the same model.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

PROVISION_QUEUE = 'provision'
CODE_INJECTION_QUEUE = 'code_injection'


class _JobPayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra='ignore',
    )


class ProvisionJobPayload(_JobPayload):
    provision_id: str = Field(..., min_length=1)
    country_preference: str | None = Field(default=None, max_length=64)
    service_selector: str | None = Field(default=None, max_length=64)
    link_to_web: bool = False

    @field_validator('country_preference', 'service_selector')
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None


class CodeInjectionPayload(_JobPayload):
    provision_id: str = Field(..., min_length=1)
    external_id: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)
