"""Newline-delimited JSON messages exchanged between the CLI and the daemon.

A client sends exactly one request line and reads exactly one response line:

    {"command": "status"}
    {"status": "ok", "message": "Daemon status", "data": {"type": "status", ...}}
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ProtocolError(ValueError):
    """Raised when a message cannot be decoded."""


class CommandKind(str, Enum):
    PING = "ping"
    STATUS = "status"
    TRIGGER = "trigger"
    SUSPEND = "suspend"
    RESUME = "resume"


@dataclass(frozen=True)
class Command:
    kind: CommandKind

    def to_json(self) -> str:
        return json.dumps({"command": self.kind.value}) + "\n"

    @classmethod
    def from_json(cls, line: str | bytes) -> "Command":
        """Decodes a request line.

        Raises:
            ProtocolError: If the line is not a JSON object with a known command.
        """
        data = _decode_object(line)
        name = data.get("command")
        try:
            return cls(CommandKind(name))
        except ValueError as e:
            raise ProtocolError(f"Unknown command: {name!r}") from e


@dataclass(frozen=True)
class RepoDetail:
    """Per-repository entry in a trigger response."""

    path: str
    committed: bool
    files_changed: int | None = None
    error: str | None = None
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"path": self.path, "committed": self.committed}
        # Absent optional fields are omitted, never null.
        for key in ("files_changed", "error", "warning"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RepoDetail":
        return cls(
            path=data["path"],
            committed=data["committed"],
            files_changed=data.get("files_changed"),
            error=data.get("error"),
            warning=data.get("warning"),
        )


@dataclass(frozen=True)
class StatusData:
    uptime_seconds: int
    check_interval_seconds: int
    repositories_count: int
    suspended: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "status",
            "uptime_seconds": self.uptime_seconds,
            "check_interval_seconds": self.check_interval_seconds,
            "repositories_count": self.repositories_count,
            "suspended": self.suspended,
        }


@dataclass(frozen=True)
class TriggerData:
    repos_checked: int
    repos_committed: int
    details: list[RepoDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "trigger",
            "repos_checked": self.repos_checked,
            "repos_committed": self.repos_committed,
            "details": [d.to_dict() for d in self.details],
        }


ResponseData = StatusData | TriggerData


@dataclass(frozen=True)
class Response:
    """A reply to one Command.

    Attributes:
        ok (bool): Serialized as "status": "ok" or "error".
        message (str): Human-readable summary.
        data (ResponseData | None): Structured payload for status/trigger.
    """

    ok: bool
    message: str
    data: ResponseData | None = None

    @classmethod
    def success(cls, message: str, data: ResponseData | None = None) -> "Response":
        return cls(True, message, data)

    @classmethod
    def error(cls, message: str) -> "Response":
        return cls(False, message)

    def to_json(self) -> str:
        out: dict[str, Any] = {
            "status": "ok" if self.ok else "error",
            "message": self.message,
        }
        if self.data is not None:
            out["data"] = self.data.to_dict()
        return json.dumps(out) + "\n"

    @classmethod
    def from_json(cls, line: str | bytes) -> "Response":
        """Decodes a response line.

        Raises:
            ProtocolError: If the line is not a well-formed response.
        """
        raw = _decode_object(line)
        status = raw.get("status")
        if status not in ("ok", "error") or not isinstance(raw.get("message"), str):
            raise ProtocolError(f"Malformed response: {raw!r}")

        data: ResponseData | None = None
        payload = raw.get("data")
        try:
            if isinstance(payload, dict) and payload.get("type") == "status":
                data = StatusData(
                    uptime_seconds=payload["uptime_seconds"],
                    check_interval_seconds=payload["check_interval_seconds"],
                    repositories_count=payload["repositories_count"],
                    suspended=payload.get("suspended", False),
                )
            elif isinstance(payload, dict) and payload.get("type") == "trigger":
                data = TriggerData(
                    repos_checked=payload["repos_checked"],
                    repos_committed=payload["repos_committed"],
                    details=[RepoDetail.from_dict(d) for d in payload["details"]],
                )
        except (KeyError, TypeError) as e:
            raise ProtocolError(f"Malformed response data: {e}") from e

        return cls(status == "ok", raw["message"], data)


def _decode_object(line: str | bytes) -> dict[str, Any]:
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Expected a JSON object")
    return data
