from datetime import datetime, timezone
from typing import Annotated

from pydantic import AnyUrl, BaseModel, ConfigDict, TypeAdapter, UrlConstraints, ValidationError, field_serializer

# HttpUrl minus its 2083 character cap; targets are stored as TEXT
_http_url = TypeAdapter(Annotated[AnyUrl, UrlConstraints(allowed_schemes=["http", "https"], host_required=True)])


def is_valid_target(target) -> bool:
    """Absolute URL with an http or https scheme and a host."""
    if not isinstance(target, str) or not target.strip():
        return False
    try:
        _http_url.validate_python(target)
    except ValidationError:
        return False
    return True


class LinkCreate(BaseModel):
    target: str | None = None
    code: str | None = None


class LinkOut(BaseModel):
    code: str
    target: str
    clicks: int
    last_clicked: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("last_clicked", "created_at")
    def _as_utc(self, value: datetime | None):
        # SQLite hands timestamps back without tzinfo; everything is stored in UTC
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()


class LinkList(BaseModel):
    links: list[LinkOut]


class QRCodeOut(BaseModel):
    code: str
    short_url: str
    qr_base64: str


class HealthOut(BaseModel):
    ok: bool
    version: str
    database: str


class MessageOut(BaseModel):
    ok: bool
