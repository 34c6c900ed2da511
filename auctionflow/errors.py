"""
Error taxonomy shared by the calculation engine and the reconciliation
controller.

Every error carries a machine readable ``kind`` plus a ``detail`` so callers
can render a specific message; ``retryable`` tells them whether repeating the
same request may succeed.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class AuctionFlowError(Exception):
    kind = "error"
    retryable = False

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "detail": self.detail,
            "retryable": self.retryable,
        }


class ValidationError(AuctionFlowError):
    """Malformed calculation input. Holds *all* violations, not the first."""
    kind = "validation_error"

    def __init__(self, errors: List[FieldError]):
        self.errors = list(errors)
        super().__init__(
            "; ".join(f"{e.field}: {e.message}" for e in self.errors)
            or "invalid input"
        )

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["errors"] = [e.to_dict() for e in self.errors]
        return out


class NotFoundError(AuctionFlowError):
    kind = "not_found"

    def __init__(self, entity_type: str, entity_id: Optional[str]):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id!r} not found")


class UpstreamError(AuctionFlowError):
    """Provider or persistence call failed or timed out. Safe to retry."""
    kind = "upstream_error"
    retryable = True


class ConflictError(AuctionFlowError):
    kind = "conflict"
