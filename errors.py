# errors.py – 컴플라이언스 서비스 오류 분류
from typing import Iterable, List, Optional


class ComplianceError(Exception):
    """Base error for anything returned by the compliance service or raised by the toolkit."""

    hint: str = ""

    def __init__(self, message: str, *, status: Optional[int] = None,
                 cmdlet: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.cmdlet = cmdlet
        if hint is not None:
            self.hint = hint

    def __str__(self) -> str:
        prefix = f"[{self.cmdlet}] " if self.cmdlet else ""
        return f"{prefix}{self.message}"


class AuthenticationError(ComplianceError):
    hint = ("Check the app id, tenant and certificate thumbprint, "
            "and that the app has the Exchange.ManageAsApp role and Compliance Administrator rights.")


class ConnectionFailedError(ComplianceError):
    hint = "The compliance endpoint could not be reached. Check network access and PURVIEW_SCC_ENDPOINT."


class AlreadyExistsError(ComplianceError):
    pass


class NotFoundError(ComplianceError):
    pass


class ValidationError(ComplianceError):
    """Local or remote validation failure; carries the offending ids when known."""

    def __init__(self, message: str, ids: Iterable[str] = (), **kwargs):
        super().__init__(message, **kwargs)
        self.ids: List[str] = list(ids)


class ConflictError(ComplianceError):
    """Objects to be created already exist on the target under the same name."""

    hint = "Rerun with --force to overwrite the existing objects."

    def __init__(self, message: str, names: Iterable[str] = (), **kwargs):
        super().__init__(message, **kwargs)
        self.names: List[str] = list(names)


class TenantGuardError(ComplianceError):
    hint = "Unset PURVIEW_TENANT_TYPE / PURVIEW_CONNECTED_ORG or connect to the intended tenant."


# 서비스 메시지 패턴 → 예외 타입 (앞에서부터 우선)
_MESSAGE_PATTERNS = (
    ("already exists", AlreadyExistsError),
    ("is already being used", AlreadyExistsError),
    ("ManagementObjectNotFoundException", NotFoundError),
    ("couldn't be found", NotFoundError),
    ("could not be found", NotFoundError),
    ("was not found", NotFoundError),
    ("ValidationException", ValidationError),
    ("is not valid", ValidationError),
    ("failed validation", ValidationError),
    ("Access is denied", AuthenticationError),
    ("AADSTS", AuthenticationError),
)


def classify(status: Optional[int], message: str, cmdlet: Optional[str] = None) -> ComplianceError:
    """Map an HTTP status and service error text to a typed exception instance."""
    msg = message or ""
    lowered = msg.lower()
    for pattern, cls in _MESSAGE_PATTERNS:
        if pattern.lower() in lowered:
            return cls(msg, status=status, cmdlet=cmdlet)
    if status in (401, 403):
        return AuthenticationError(msg or "Unauthorized", status=status, cmdlet=cmdlet)
    if status == 404:
        return NotFoundError(msg or "Not found", status=status, cmdlet=cmdlet)
    return ComplianceError(msg or f"HTTP {status}", status=status, cmdlet=cmdlet)
