"""
Entity identifiers for optimistic synchronization.

An identifier is either a client-minted placeholder (``TemporaryId``) or the
identifier assigned by the CommitFlow server (``CanonicalId``). The string
prefix used by the REST API for temporary identifiers only appears at the
serialization boundary (``parse_ref`` and ``.wire``).
"""

import secrets
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

TEMP_PREFIX = "tmp_"


class TemporaryId(BaseModel):
    """Placeholder identifier for an entity the server has not confirmed yet."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["temporary"] = "temporary"
    token: str = Field(..., min_length=1)

    @classmethod
    def mint(cls) -> "TemporaryId":
        """Create a fresh temporary identifier."""
        return cls(token=secrets.token_hex(5))

    @property
    def wire(self) -> str:
        return f"{TEMP_PREFIX}{self.token}"

    def __str__(self) -> str:
        return self.wire


class CanonicalId(BaseModel):
    """Server-assigned identifier."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["canonical"] = "canonical"
    value: str = Field(..., min_length=1)

    @property
    def wire(self) -> str:
        return self.value

    def __str__(self) -> str:
        return self.value


EntityRef = Annotated[Union[TemporaryId, CanonicalId], Field(discriminator="kind")]
Ref = Union[TemporaryId, CanonicalId]


def parse_ref(value: Any) -> Optional[Ref]:
    """Parse a wire identifier (or pass through an already-typed one)."""
    if value is None:
        return None
    if isinstance(value, (TemporaryId, CanonicalId)):
        return value
    text = str(value).strip()
    if not text:
        return None
    if text.startswith(TEMP_PREFIX) and len(text) > len(TEMP_PREFIX):
        return TemporaryId(token=text[len(TEMP_PREFIX) :])
    return CanonicalId(value=text)


def to_wire(ref: Optional[Ref]) -> Optional[str]:
    """Render an identifier in the form the REST API expects."""
    return ref.wire if ref is not None else None


def is_temporary(ref: Any) -> bool:
    return isinstance(ref, TemporaryId)
