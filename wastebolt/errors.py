"""
Typed failures of the dispatch core. Each maps to one structured API response.
"""
from typing import Any, Dict, List, Optional


class DispatchError(Exception):
    status_code = 400
    code = "dispatch_error"

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "detail": self.detail}
        body.update(self.extra)
        return body


class ValidationError(DispatchError):
    status_code = 422
    code = "validation_error"

    def __init__(self, errors: List[Dict[str, str]]):
        fields = ", ".join(e["field"] for e in errors)
        super().__init__(f"Invalid fields: {fields}", errors=errors)
        self.errors = errors


class UnsupportedWasteType(DispatchError):
    status_code = 422
    code = "unsupported_waste_type"

    def __init__(self, waste_type: Any):
        super().__init__(f"Unsupported waste type: {waste_type!r}", waste_type=waste_type)


class NotFound(DispatchError):
    status_code = 404
    code = "not_found"

    def __init__(self, kind: str, ident: Optional[str]):
        super().__init__(f"{kind} {ident} not found", resource=kind, id=ident)


class NoCandidatesFound(DispatchError):
    status_code = 404
    code = "no_candidates_found"


class AlreadyAssigned(DispatchError):
    status_code = 409
    code = "already_assigned"


class IllegalTransition(DispatchError):
    status_code = 409
    code = "illegal_transition"

    def __init__(self, current: str, target: str, kind: str = "collection"):
        super().__init__(
            f"Cannot move {kind} from {current} to {target}",
            current=current,
            target=target,
        )


class AlreadyRated(DispatchError):
    status_code = 409
    code = "already_rated"


class PermissionDenied(DispatchError):
    status_code = 403
    code = "permission_denied"
