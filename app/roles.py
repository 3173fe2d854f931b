from __future__ import annotations

from dataclasses import dataclass

SUPPORTED_ROLES = (
    "api",
    "worker-dispatch",
    "worker-reaper",
    "worker-analytics-replay",
)

WORKER_ROLES = frozenset(role for role in SUPPORTED_ROLES if role.startswith("worker-"))


@dataclass(frozen=True)
class RuntimeRole:
    name: str

    @property
    def runs_worker_loop(self) -> bool:
        return self.name in WORKER_ROLES


def validate_role(role: str) -> RuntimeRole:
    if role in SUPPORTED_ROLES:
        return RuntimeRole(name=role)

    supported = ", ".join(SUPPORTED_ROLES)
    raise ValueError(
        f"Unsupported role '{role}'. Supported roles: {supported}. "
        "Note: migrations are applied externally and are not an app role."
    )
