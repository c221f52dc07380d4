from dataclasses import dataclass

REVIEW_READ = "review:read"
REVIEW_WRITE = "review:write"


@dataclass(slots=True)
class Principal:
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")
