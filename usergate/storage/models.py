from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROLES = ("owner", "admin", "user")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    name: str
    email: str
    password_hash: str
    role: str = "user"
    age: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)

    def to_public(self) -> Dict[str, Any]:
        """Outward representation; the password hash never leaves the store."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "age": self.age,
            "role": self.role,
            "created_at": self.created_at.isoformat(),
        }
