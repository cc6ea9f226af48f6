from dataclasses import dataclass

from bluebox.core.entitlements import LimitSet, get_limits


@dataclass(slots=True)
class Principal:
    """Authenticated actor for a single request."""

    actor_id: int
    role: str
    tier: str
    status: str
    scopes: set[str]
    subject: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

    @property
    def limits(self) -> LimitSet:
        return get_limits(self.role, self.tier)  # type: ignore[arg-type]
