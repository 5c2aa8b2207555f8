from dataclasses import dataclass


@dataclass(slots=True)
class Principal:
    module_id: str
    scopes: set[str]

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")
