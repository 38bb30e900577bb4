"""Error profile helpers that shape the ``data`` member of JSON-RPC errors."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .a2a.models import JSONRPCError


class ErrorProfile(str, Enum):
    """Supported JSON-RPC error data formats."""

    BASIC = "basic"
    EXTENDED_JSON = "extended-json"


@dataclass(frozen=True)
class ErrorContract:
    """Normalized representation of an RPC error payload.

    ``diagnostics`` never leaves the server; it holds whatever the profile
    removed from the public ``data`` member.
    """

    code: int
    message: str
    data: Optional[Any] = None
    diagnostics: Optional[Dict[str, Any]] = None

    def to_jsonrpc_error(self) -> JSONRPCError:
        return JSONRPCError(code=self.code, message=self.message, data=self.data)


def parse_error_profile(raw_profile: Optional[str]) -> ErrorProfile:
    """Parse an error profile string into the enum, validating supported values."""
    if not raw_profile:
        return ErrorProfile.BASIC
    try:
        return ErrorProfile(raw_profile)
    except ValueError as exc:
        supported = ", ".join(profile.value for profile in ErrorProfile)
        raise ValueError(
            f"Unsupported A2A error profile '{raw_profile}'. Supported profiles: {supported}"
        ) from exc


def _normalize_data_for_profile(
    data: Optional[Any],
    profile: ErrorProfile,
) -> Tuple[Optional[Any], Optional[Dict[str, Any]]]:
    """Return (public data, suppressed structured data) for the given profile."""
    if data is None:
        return None, None

    if profile is ErrorProfile.BASIC:
        if isinstance(data, str):
            return data, None

        try:
            data_string = json.dumps(data, separators=(",", ":"), sort_keys=True)
        except (TypeError, ValueError):
            data_string = str(data)
        return data_string, {"raw_data": data}

    # EXTENDED_JSON keeps structured data as-is
    return data, None


def build_error(
    *,
    profile: ErrorProfile,
    code: int,
    message: str,
    data: Optional[Any] = None,
    diagnostics: Optional[Dict[str, Any]] = None,
) -> ErrorContract:
    """Construct an ErrorContract honoring the selected profile."""
    public_data, suppressed = _normalize_data_for_profile(data, profile)

    merged_diagnostics: Dict[str, Any] = {}
    if diagnostics:
        merged_diagnostics.update(diagnostics)
    if suppressed:
        merged_diagnostics.setdefault("suppressed_data", suppressed)

    return ErrorContract(
        code=code,
        message=message,
        data=public_data,
        diagnostics=merged_diagnostics or None,
    )
