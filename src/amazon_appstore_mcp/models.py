"""Pydantic models for Amazon Appstore MCP Server."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TargetingStatus(str, Enum):
    """Device targeting status values."""

    TARGETING = "TARGETING"
    NOT_TARGETING = "NOT_TARGETING"


class PublishStrategy(str, Enum):
    """How new APKs take the place of the ones already on the edit."""

    REPLACE_IN_PLACE = "replace_in_place"
    UPLOAD_NEW_DELETE_OLD = "upload_new_delete_old"


class PublishPhase(str, Enum):
    """Steps of a publish run, in the order they execute."""

    AUTHENTICATE = "authenticate"
    RESOLVE_EDIT = "resolve_edit"
    REPLACE_APKS = "replace_apks"
    SNAPSHOT_TARGETING = "snapshot_targeting"
    UPLOAD_APKS = "upload_apks"
    DISABLE_OLD_TARGETING = "disable_old_targeting"
    APPLY_TARGETING = "apply_targeting"
    DELETE_OLD_APKS = "delete_old_apks"


class _WireModel(BaseModel):
    """Immutable model serialized as camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class Token(BaseModel):
    """Login with Amazon access token."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    access_token: str = Field(..., description="Bearer token value")
    token_type: str = Field("bearer", description="Token type")
    expires_in: int | None = Field(None, description="Lifetime in seconds")
    scope: str | None = Field(None, description="Granted scope")

    @property
    def authorization(self) -> str:
        return f"Bearer {self.access_token}"


class Edit(_WireModel):
    """A staging transaction for store listing changes."""

    id: str = Field(..., description="Edit ID")
    status: str | None = Field(None, description="Edit status")
    etag: str = Field("", exclude=True, description="ETag from the response header")


class Apk(_WireModel):
    """An APK attached to an edit."""

    version_code: int = Field(..., description="APK version code")
    id: str = Field(..., description="Server-assigned APK ID")
    name: str = Field(..., description="Display name")
    etag: str = Field("", exclude=True, description="ETag from the response header")


class Reason(_WireModel):
    """Explanation for a device's targeting status."""

    reason: str | None = Field(None, description="Reason text")
    details: list[str] = Field(default_factory=list, description="Reason details")


class Device(_WireModel):
    """Targeting entry for a single device."""

    id: str = Field(..., description="Device ID")
    name: str = Field(..., description="Device name")
    status: str = Field(..., description="Targeting status")
    reason: Reason | None = Field(None, description="Why the device has this status")


class ApkTargeting(_WireModel):
    """Device targeting rule set of an APK.

    The ETag is transport metadata: it is captured from the response header of
    the call that fetched the rule set and sent back as ``If-Match``. It is
    never part of the JSON body.
    """

    amazon_devices: list[Device] = Field(default_factory=list, description="Amazon devices")
    non_amazon_devices: list[Device] = Field(
        default_factory=list, description="Non-Amazon devices"
    )
    other_android_devices: str | None = Field(
        None, description="Catch-all setting for devices not listed"
    )
    etag: str = Field("", exclude=True, description="ETag from the response header")

    def with_etag(self, etag: str) -> ApkTargeting:
        """Return a copy of this rule set bound to another ETag."""
        return self.model_copy(update={"etag": etag})

    def to_wire(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)


class PublishResult(BaseModel):
    """Result of a publish run."""

    success: bool = Field(..., description="Whether the publish succeeded")
    application_id: str = Field(..., description="Amazon application ID")
    edit_id: str | None = Field(None, description="Edit the APKs were published to")
    strategy: PublishStrategy | None = Field(None, description="Strategy used")
    uploaded_apks: list[Apk] = Field(default_factory=list, description="Newly uploaded APKs")
    replaced_apk_ids: list[str] = Field(
        default_factory=list, description="APKs whose content was replaced in place"
    )
    deleted_apk_ids: list[str] = Field(
        default_factory=list, description="Old APKs removed from the edit"
    )
    message: str = Field(..., description="Status message")
    phase: PublishPhase | None = Field(None, description="Phase that failed")
    error: str | None = Field(None, description="Error details if failed")
