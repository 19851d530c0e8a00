from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ServiceKey:
    """
    Identity of a registration: the requested type plus an optional name.

    An unnamed key never equals a named one, so ``ServiceKey(Db)`` and
    ``ServiceKey(Db, "cache")`` address two independent registrations.
    """

    service_type: object
    name: str | None = None

    @property
    def type_name(self) -> str:
        return getattr(self.service_type, "__name__", None) or repr(self.service_type)

    def __str__(self) -> str:
        if self.name is None:
            return self.type_name
        return f"{self.type_name}({self.name})"


__all__ = ["ServiceKey"]
