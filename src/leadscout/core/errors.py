from __future__ import annotations

EXTRACTION_KINDS = ("navigation", "timeout", "parse", "blocked")


class ExtractionError(RuntimeError):
    """A site strategy could not continue producing records."""

    def __init__(self, kind: str, message: str = "", *, url: str = "") -> None:
        if kind not in EXTRACTION_KINDS:
            raise ValueError(f"Unknown extraction error kind: {kind}")
        self.kind = kind
        self.url = url
        detail = message or kind
        if url:
            detail = f"{detail} ({url})"
        super().__init__(f"[{kind}] {detail}")


class ReconciliationError(RuntimeError):
    """Storage write for a single record failed after retrying."""

    def __init__(self, record_id: str, message: str = "") -> None:
        self.record_id = record_id
        super().__init__(f"reconcile failed for {record_id}: {message}")
