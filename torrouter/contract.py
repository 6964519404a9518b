"""Request/response types for the control endpoint, plus input validators.

Validators either return the cleaned value or raise ValidationError; they
never touch the filesystem or run anything.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from torrouter.errors import ValidationError


@dataclass(frozen=True)
class UploadedFile:
    """A file received in a multipart form."""

    filename: str
    content: bytes


@dataclass(frozen=True)
class ActionRequest:
    action: str
    params: dict[str, Any] = field(default_factory=dict)
    upload: UploadedFile | None = None


@dataclass(frozen=True)
class ActionResult:
    ok: bool
    message: str
    extra: dict[str, Any] = field(default_factory=dict)
    http_status: int = 200

    def to_dict(self):
        return {"ok": self.ok, "message": self.message, **self.extra}


def base_name(name):
    """Last path component of ``name``, splitting on both / and \\."""
    return re.split(r"[\\/]", name)[-1]


def validate_profile_name(name):
    """A VPN profile name must already be a bare file name."""
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("No profile specified.")
    if (
        base_name(name) != name
        or name in (".", "..")
        or name.startswith("-")
        or "\x00" in name
    ):
        raise ValidationError("Invalid profile name.")
    return name


def validate_upload_name(filename, extensions):
    """Reduce an uploaded file name to its base name and check its suffix."""
    name = base_name(filename or "")
    if name.startswith(".") or "\x00" in name or not name.endswith(tuple(extensions)):
        allowed = " and ".join(extensions)
        raise ValidationError(f"Only {allowed} files allowed.")
    return name


def validate_choice(value, allowed, message):
    """``value`` must be exactly one of ``allowed``."""
    if not isinstance(value, str) or value not in allowed:
        raise ValidationError(message)
    return value
