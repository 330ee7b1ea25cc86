from dataclasses import dataclass
from enum import Enum

INGESTION_READ = "ingestion:read"
INGESTION_WRITE = "ingestion:write"
LINKS_WRITE = "links:write"


class PrincipalType(str, Enum):
    ADMIN = "admin"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")
