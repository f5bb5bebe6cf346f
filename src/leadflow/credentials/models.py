"""Credential bundle models.

A bundle is the set of tokens held for one (app user, platform, platform
account) identity. The shape of a bundle depends on the platform:

- Instagram / Facebook: user token, derived page token, optional refresh token
- LinkedIn: access token, optional refresh token

Each token is a TokenGrant whose ``expires_at`` is computed once, when the
token is saved, and is the only source of truth for expiry.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, ClassVar, Union

from leadflow.errors import ValidationError
from leadflow.infra.time import from_iso, to_iso
from leadflow.observability.redaction import mask_token


class Platform(str, Enum):
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    LINKEDIN = "linkedin"

    @classmethod
    def parse(cls, value: Any) -> "Platform":
        """Parse a platform name.

        Raises:
            ValidationError: If the platform is not supported.
        """
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(
                f"Unsupported platform: {value}",
                details={"supported": [p.value for p in cls]},
            ) from None


@dataclass(frozen=True)
class CredentialKey:
    """Identity of a credential bundle."""

    app_user_id: str
    platform: Platform
    platform_account_id: str

    def __post_init__(self) -> None:
        if not isinstance(self.app_user_id, str) or not self.app_user_id:
            raise ValidationError("app_user_id is required")
        if not isinstance(self.platform_account_id, str) or not self.platform_account_id:
            raise ValidationError("platform_account_id is required")
        if not isinstance(self.platform, Platform):
            object.__setattr__(self, "platform", Platform.parse(self.platform))

    def to_dict(self) -> dict[str, str]:
        return {
            "appUserId": self.app_user_id,
            "platform": self.platform.value,
            "platformAccountId": self.platform_account_id,
        }


@dataclass(frozen=True)
class TokenGrant:
    token: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None
    expires_in: int | None = None

    @classmethod
    def issue(cls, token: str, expires_in: int | None, now: datetime) -> "TokenGrant":
        return cls(
            token=token,
            created_at=now,
            updated_at=now,
            expires_at=_expiry(expires_in, now),
            expires_in=expires_in,
        )

    def renewed(self, token: str, expires_in: int | None, now: datetime) -> "TokenGrant":
        """New token value for the same grant; created_at is kept."""
        return replace(
            self,
            token=token,
            updated_at=now,
            expires_at=_expiry(expires_in, now),
            expires_in=expires_in,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "expiresAt": to_iso(self.expires_at),
            "expiresIn": self.expires_in,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }

    def to_public_dict(self, now: datetime) -> dict[str, Any]:
        """Like to_dict but with the token masked and expiry evaluated."""
        data = self.to_dict()
        data["token"] = mask_token(self.token)
        data["expired"] = self.is_expired(now)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenGrant":
        """Create from dict.

        Raises:
            ValueError: If the token or timestamps are missing.
        """
        token = data.get("token")
        if not token or not isinstance(token, str):
            raise ValueError("grant has no token")
        created_at = from_iso(data.get("createdAt"))
        updated_at = from_iso(data.get("updatedAt")) or created_at
        if created_at is None or updated_at is None:
            raise ValueError("grant has no createdAt")
        expires_in = data.get("expiresIn")
        return cls(
            token=token,
            created_at=created_at,
            updated_at=updated_at,
            expires_at=from_iso(data.get("expiresAt")),
            expires_in=int(expires_in) if expires_in is not None else None,
        )


def _expiry(expires_in: int | None, now: datetime) -> datetime | None:
    if expires_in is None:
        return None
    return now + timedelta(seconds=int(expires_in))


@dataclass(frozen=True, kw_only=True)
class _CredentialBundle:
    PRIMARY: ClassVar[str]
    GRANT_FIELDS: ClassVar[tuple[str, ...]]
    PLAIN_FIELDS: ClassVar[tuple[str, ...]] = ()

    key: CredentialKey
    created_at: datetime
    updated_at: datetime
    refresh_token: TokenGrant | None = None
    account_meta: dict[str, Any] = field(default_factory=dict)

    @property
    def platform(self) -> Platform:
        return self.key.platform

    @property
    def primary_grant(self) -> TokenGrant | None:
        return getattr(self, self.PRIMARY)

    def grants(self) -> dict[str, TokenGrant]:
        """Present token grants by field name."""
        return {
            name: grant
            for name in self.GRANT_FIELDS
            if (grant := getattr(self, name)) is not None
        }

    def expiry_report(self, now: datetime) -> dict[str, bool]:
        """Expired flag per present grant, evaluated at ``now``."""
        return {name: grant.is_expired(now) for name, grant in self.grants().items()}

    def is_primary_expired(self, now: datetime) -> bool:
        grant = self.primary_grant
        return grant is not None and grant.is_expired(now)

    def last_renewed_at(self) -> datetime | None:
        grant = self.primary_grant
        if grant is None:
            return None
        return grant.updated_at or grant.created_at

    def to_public_dict(self, now: datetime) -> dict[str, Any]:
        """API view: tokens masked, expiry evaluated."""
        data: dict[str, Any] = {
            **self.key.to_dict(),
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "accountMeta": dict(self.account_meta),
            "tokens": {
                name: grant.to_public_dict(now) for name, grant in self.grants().items()
            },
        }
        for name in self.PLAIN_FIELDS:
            data[_camel(name)] = getattr(self, name)
        return data


@dataclass(frozen=True, kw_only=True)
class InstagramCredentials(_CredentialBundle):
    """account_meta keys: instagram_account_id, username."""

    PRIMARY: ClassVar[str] = "user_token"
    GRANT_FIELDS: ClassVar[tuple[str, ...]] = ("user_token", "page_token", "refresh_token")
    PLAIN_FIELDS: ClassVar[tuple[str, ...]] = ("page_id", "page_name")

    user_token: TokenGrant | None = None
    page_token: TokenGrant | None = None
    page_id: str | None = None
    page_name: str | None = None


@dataclass(frozen=True, kw_only=True)
class FacebookCredentials(_CredentialBundle):
    """account_meta keys: user_name."""

    PRIMARY: ClassVar[str] = "user_token"
    GRANT_FIELDS: ClassVar[tuple[str, ...]] = ("user_token", "page_token", "refresh_token")
    PLAIN_FIELDS: ClassVar[tuple[str, ...]] = ("page_id", "page_name")

    user_token: TokenGrant | None = None
    page_token: TokenGrant | None = None
    page_id: str | None = None
    page_name: str | None = None


@dataclass(frozen=True, kw_only=True)
class LinkedInCredentials(_CredentialBundle):
    PRIMARY: ClassVar[str] = "access_token"
    GRANT_FIELDS: ClassVar[tuple[str, ...]] = ("access_token", "refresh_token")

    access_token: TokenGrant | None = None


CredentialBundle = Union[InstagramCredentials, FacebookCredentials, LinkedInCredentials]

BUNDLE_TYPES: dict[Platform, type] = {
    Platform.INSTAGRAM: InstagramCredentials,
    Platform.FACEBOOK: FacebookCredentials,
    Platform.LINKEDIN: LinkedInCredentials,
}


@dataclass(frozen=True)
class GrantUpdate:
    """New value for one token field."""

    token: str
    expires_in: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.token, str) or not self.token:
            raise ValidationError("token must be a non-empty string")


@dataclass(frozen=True)
class CredentialPatch:
    """Partial update of a bundle. Fields left as None are not touched."""

    user_token: GrantUpdate | None = None
    page_token: GrantUpdate | None = None
    access_token: GrantUpdate | None = None
    refresh_token: GrantUpdate | None = None
    page_id: str | None = None
    page_name: str | None = None
    account_meta: dict[str, Any] | None = None

    def fields_set(self) -> set[str]:
        return {f.name for f in fields(self) if getattr(self, f.name) is not None}


def _allowed_fields(bundle_type: type) -> set[str]:
    return set(bundle_type.GRANT_FIELDS) | set(bundle_type.PLAIN_FIELDS) | {"account_meta"}


def merge_patch(
    existing: CredentialBundle | None,
    key: CredentialKey,
    patch: CredentialPatch,
    now: datetime,
) -> CredentialBundle:
    """Apply a patch on top of the stored bundle (or a fresh one).

    Untouched grants and fields are carried over unchanged; renewed grants
    keep their created_at.

    Raises:
        ValidationError: If the patch sets fields the platform does not have.
    """
    bundle_type = BUNDLE_TYPES[key.platform]
    invalid = patch.fields_set() - _allowed_fields(bundle_type)
    if invalid:
        raise ValidationError(
            f"Fields not valid for {key.platform.value} credentials",
            details={"fields": sorted(invalid)},
        )

    base = existing if existing is not None else bundle_type(key=key, created_at=now, updated_at=now)
    changes: dict[str, Any] = {"updated_at": now}

    for name in bundle_type.GRANT_FIELDS:
        update: GrantUpdate | None = getattr(patch, name)
        if update is None:
            continue
        current: TokenGrant | None = getattr(base, name)
        if current is None:
            changes[name] = TokenGrant.issue(update.token, update.expires_in, now)
        else:
            changes[name] = current.renewed(update.token, update.expires_in, now)

    for name in bundle_type.PLAIN_FIELDS:
        value = getattr(patch, name)
        if value is not None:
            changes[name] = value

    if patch.account_meta is not None:
        changes["account_meta"] = {**base.account_meta, **patch.account_meta}

    return replace(base, **changes)


def bundle_to_record(bundle: CredentialBundle) -> dict[str, Any]:
    """Serialize a bundle for a storage backing."""
    record: dict[str, Any] = {
        **bundle.key.to_dict(),
        "createdAt": to_iso(bundle.created_at),
        "updatedAt": to_iso(bundle.updated_at),
        "accountMeta": dict(bundle.account_meta),
        "tokens": {name: grant.to_dict() for name, grant in bundle.grants().items()},
    }
    for name in bundle.PLAIN_FIELDS:
        record[_camel(name)] = getattr(bundle, name)
    return record


def bundle_from_record(record: dict[str, Any]) -> CredentialBundle:
    """Inverse of bundle_to_record.

    Raises:
        ValueError: If the record is malformed.
    """
    if not isinstance(record, dict):
        raise ValueError("credential record must be an object")
    try:
        key = CredentialKey(
            app_user_id=record.get("appUserId"),
            platform=Platform.parse(record.get("platform")),
            platform_account_id=record.get("platformAccountId"),
        )
    except ValidationError as exc:
        raise ValueError(exc.message) from None

    bundle_type = BUNDLE_TYPES[key.platform]
    created_at = from_iso(record.get("createdAt"))
    if created_at is None:
        raise ValueError("credential record has no createdAt")

    tokens = record.get("tokens") or {}
    if not isinstance(tokens, dict):
        raise ValueError("credential tokens must be an object")

    kwargs: dict[str, Any] = {
        "key": key,
        "created_at": created_at,
        "updated_at": from_iso(record.get("updatedAt")) or created_at,
        "account_meta": dict(record.get("accountMeta") or {}),
    }
    for name in bundle_type.GRANT_FIELDS:
        if tokens.get(name):
            kwargs[name] = TokenGrant.from_dict(tokens[name])
    for name in bundle_type.PLAIN_FIELDS:
        kwargs[name] = record.get(_camel(name))
    return bundle_type(**kwargs)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)
