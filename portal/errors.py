from __future__ import annotations

from typing import Any, List, Optional


class PortalError(Exception):
    """Base class for every error the portal raises on purpose."""


# --- configuration store ---
class ConfigLoadError(PortalError):
    pass


class ConfigSaveError(PortalError):
    pass


class ConfigVersionConflict(ConfigSaveError):
    def __init__(self, expected: Optional[str], actual: Optional[str]) -> None:
        super().__init__(f"field config changed since {expected!r} (now {actual!r})")
        self.expected = expected
        self.actual = actual


class SectionNotFound(PortalError):
    def __init__(self, section: str) -> None:
        super().__init__(f"unknown section: {section}")
        self.section = section


# --- form validation ---
class ValidationError(PortalError):
    def __init__(self, errors: List[str]) -> None:
        super().__init__("; ".join(errors) or "validation failed")
        self.errors = list(errors)


class NothingToUpdate(ValidationError):
    def __init__(self) -> None:
        super().__init__(["수정할 항목이 없습니다."])


# --- downstream (CodeBeamer) ---
class DownstreamError(PortalError):
    transient = False


class DownstreamUnavailable(DownstreamError):
    """Network error or timeout; nothing came back from CodeBeamer."""

    transient = True


class DownstreamRejected(DownstreamError):
    """CodeBeamer answered with an error status. `body` is kept raw for diagnosis."""

    def __init__(self, status_code: int, body: Any = None, message: str = "") -> None:
        super().__init__(message or f"CodeBeamer responded {status_code}")
        self.status_code = int(status_code)
        self.body = body

    @property
    def transient(self) -> bool:  # type: ignore[override]
        return self.status_code >= 500


class PartialAttachmentFailure(PortalError):
    def __init__(self, record_id: int, results: list) -> None:
        failed = [r.filename for r in results if not r.ok]
        super().__init__(f"item {record_id}: {len(failed)} of {len(results)} attachments failed")
        self.record_id = record_id
        self.results = list(results)
        self.failed = failed
