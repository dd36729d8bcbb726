"""
Metadata Record — the persisted ground truth for a store.

One JSON document (`certs/metadata.json`) describing the base bundle, the
combined bundle and the catalog of user certificates. Models are frozen
pydantic models: mutations return a new record, and the repository replaces
the whole document on every save.

Schema evolution goes through `_MIGRATIONS`, a chain keyed by the version a
step upgrades *from*. Loading walks the chain until the current version is
reached; a version with no step (including anything newer than this code) is
rejected as corrupt.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, ValidationError

from railway import ErrorCode
from railway.result import Result

SCHEMA_VERSION = "1"

SOURCE_BASE = "mozilla"
SOURCE_USER = "user"
ORIGIN_EMBEDDED = "embedded"

USER_DIR = "user"
PEM_SUFFIX = ".pem"

Migration = Callable[[dict[str, Any]], dict[str, Any]]

# from-version → (to-version, step)
_MIGRATIONS: dict[str, tuple[str, Migration]] = {}


class BaseBundleInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    generated: AwareDatetime
    sha256: str
    cert_count: int = Field(ge=0)
    source: str = ORIGIN_EMBEDDED
    version: str | None = None


class CombinedBundleInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    generated: AwareDatetime
    sha256: str
    cert_count: int = Field(ge=0)
    sources: tuple[str, ...] = (SOURCE_BASE,)


class UserCertificate(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    added: AwareDatetime
    fingerprint: str
    subject: str
    expires: AwareDatetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires


class Metadata(BaseModel):
    """The whole record. Field order here is the field order on disk."""

    model_config = ConfigDict(frozen=True)

    schema_version: str = SCHEMA_VERSION
    combined_bundle: CombinedBundleInfo
    base_bundle: BaseBundleInfo
    user_certificates: tuple[UserCertificate, ...] = ()

    @staticmethod
    def new(base_bundle: BaseBundleInfo, combined_bundle: CombinedBundleInfo) -> Metadata:
        return Metadata(combined_bundle=combined_bundle, base_bundle=base_bundle)

    def find(self, name: str) -> UserCertificate | None:
        for cert in self.user_certificates:
            if cert.name == name:
                return cert
        return None

    def with_certificate(self, cert: UserCertificate) -> Metadata:
        """Upsert by name: an existing entry is replaced in place, a new one appended."""
        if self.find(cert.name) is None:
            return self.model_copy(update={"user_certificates": (*self.user_certificates, cert)})
        replaced = tuple(cert if c.name == cert.name else c for c in self.user_certificates)
        return self.model_copy(update={"user_certificates": replaced})

    def without_certificate(self, name: str) -> Metadata:
        remaining = tuple(c for c in self.user_certificates if c.name != name)
        return self.model_copy(update={"user_certificates": remaining})

    def with_base_bundle(self, info: BaseBundleInfo) -> Metadata:
        return self.model_copy(update={"base_bundle": info})

    def with_combined_bundle(self, info: CombinedBundleInfo) -> Metadata:
        return self.model_copy(update={"combined_bundle": info})

    def to_json(self) -> str:
        return self.model_dump_json(indent=2) + "\n"


def user_certificate_path(name: str) -> str:
    """Catalog path of a user certificate, relative to the `certs/` directory."""
    return f"{USER_DIR}/{name}{PEM_SUFFIX}"


def check_certificate_name(name: str, operation: str = "") -> Result[str]:
    """
    Reject names that could escape `certs/user/` or collide with the lock/temp files.

    Names are case-sensitive and otherwise free-form.
    """
    reason = None
    if not name or not name.strip():
        reason = "name must not be empty"
    elif "/" in name or "\\" in name:
        reason = "name must not contain path separators"
    elif ".." in name:
        reason = "name must not contain '..'"
    elif "\x00" in name:
        reason = "name must not contain NUL"
    elif name.startswith("."):
        reason = "name must not start with '.'"
    if reason is not None:
        return Result.failure(
            ErrorCode.INVALID_NAME, f"invalid certificate name {name!r}: {reason}", operation=operation
        )
    return Result.success(name)


def migrate(document: dict[str, Any], migrations: dict[str, tuple[str, Migration]] | None = None) -> Result[dict[str, Any]]:
    """Walk the migration chain until `document` is at SCHEMA_VERSION."""
    chain = _MIGRATIONS if migrations is None else migrations
    version = document.get("schema_version")
    if not isinstance(version, str):
        return Result.failure(ErrorCode.CORRUPT_METADATA, "metadata has no schema_version", operation="load metadata")
    seen: set[str] = set()
    while version != SCHEMA_VERSION:
        step = chain.get(version)
        if step is None or version in seen:
            return Result.failure(
                ErrorCode.CORRUPT_METADATA,
                f"unsupported metadata schema version {version!r} (expected {SCHEMA_VERSION!r})",
                operation="load metadata",
            )
        seen.add(version)
        target, upgrade = step
        document = {**upgrade(document), "schema_version": target}
        version = target
    return Result.success(document)


def parse_metadata(raw: bytes, migrations: dict[str, tuple[str, Migration]] | None = None) -> Result[Metadata]:
    """Decode, migrate and validate a metadata document."""
    try:
        document = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        return Result.failure(ErrorCode.CORRUPT_METADATA, f"metadata is not valid JSON: {e}", e, operation="load metadata")
    if not isinstance(document, dict):
        return Result.failure(ErrorCode.CORRUPT_METADATA, "metadata must be a JSON object", operation="load metadata")
    return migrate(document, migrations).flat_map(_validate)


def _validate(document: dict[str, Any]) -> Result[Metadata]:
    try:
        return Result.success(Metadata.model_validate(document))
    except ValidationError as e:
        return Result.failure(
            ErrorCode.CORRUPT_METADATA,
            f"metadata does not match schema: {e.error_count()} error(s)",
            e,
            operation="load metadata",
        )
