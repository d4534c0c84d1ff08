"""Interfaces of the collaborators the core depends on.

The workflow services never talk to a concrete mailer, object store or
identity provider. They receive an ``Actor`` resolved by a permission
oracle, a ``NotificationSink`` and, for documents, a ``BlobStore``.
``LocalBlobStore`` is the filesystem-backed store used by the API.
"""

from __future__ import annotations

import io
import mimetypes
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Protocol

from incentra.errors import NotFoundError, PermissionDeniedError, ValidationError


# ---------------------------------------------------------------------------
# Identity and permissions
# ---------------------------------------------------------------------------

class Capability(str, Enum):
    """Permission tiers checked by the workflows."""

    RESEARCH_REVIEW = "research_review"
    RESEARCH_APPROVE = "research_approve"
    DRD_REVIEW = "drd_review"
    DRD_HEAD = "drd_head"
    IPR_GOVT_FILING = "ipr_govt_filing"
    POLICY_MANAGE = "policy_manage"


@dataclass(slots=True, frozen=True)
class Actor:
    """The authenticated caller of a workflow operation."""

    id: str
    uid: str = ""
    role: str = "faculty"  # faculty | staff | student
    capabilities: frozenset[str] = frozenset()
    school_ids: frozenset[str] = frozenset()

    def has_permission(self, capability: Capability | str) -> bool:
        value = getattr(capability, "value", capability)
        return "*" in self.capabilities or value in self.capabilities

    def require(self, capability: Capability | str) -> None:
        """Raise ``PermissionDeniedError`` unless the actor holds ``capability``."""
        if not self.has_permission(capability):
            value = getattr(capability, "value", capability)
            raise PermissionDeniedError(f"Missing permission: {value}", capability=value)


class PermissionOracle(Protocol):
    """Capability checks and caller resolution."""

    def has_permission(self, user_id: str, capability: Capability | str) -> bool: ...

    def current_user(self, api_key: str | None) -> Actor | None: ...

    def holders_of(self, capability: Capability | str) -> list[str]: ...


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class NotificationSink(Protocol):
    """Fire-and-forget message sink. Implementations never raise to the caller."""

    async def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        reference_type: str = "",
        reference_id: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


# ---------------------------------------------------------------------------
# Blob storage
# ---------------------------------------------------------------------------

@dataclass(slots=True, frozen=True)
class BlobRef:
    key: str


@dataclass(slots=True)
class BlobObject:
    stream: BinaryIO
    content_type: str
    length: int


class BlobStore(Protocol):
    async def upload(
        self, data: bytes, folder: str, owner_id: str, filename: str, mime_type: str = ""
    ) -> BlobRef: ...

    async def download(self, key: str) -> BlobObject: ...


def _safe_segment(value: str, field: str) -> str:
    cleaned = Path(value).name.strip()
    if not cleaned or cleaned in {".", ".."}:
        raise ValidationError(f"Invalid {field}", field=field)
    return cleaned


class LocalBlobStore:
    """Blob store on the local filesystem. Keys are ``folder/owner/uuid-filename``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _resolve(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValidationError("Invalid blob key", field="key")
        return path

    async def upload(
        self, data: bytes, folder: str, owner_id: str, filename: str, mime_type: str = ""
    ) -> BlobRef:
        if not data:
            raise ValidationError("Empty upload", field="data")
        key = "/".join([
            _safe_segment(folder, "folder"),
            _safe_segment(owner_id, "owner_id"),
            f"{uuid.uuid4().hex}-{_safe_segment(filename, 'filename')}",
        ])
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return BlobRef(key=key)

    async def download(self, key: str) -> BlobObject:
        path = self._resolve(key)
        if not path.is_file():
            raise NotFoundError("document", key)
        data = path.read_bytes()
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return BlobObject(stream=io.BytesIO(data), content_type=content_type, length=len(data))
