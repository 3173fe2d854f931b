from __future__ import annotations

import hashlib
import importlib
import re

ulid_module = importlib.import_module("ulid")

_UNSAFE_PART_RE = re.compile(r"[^a-zA-Z0-9:_\-]")


def new_job_id() -> str:
    return f"job_{ulid_module.new().str}"


def new_worker_id(role: str) -> str:
    return f"{role}:{ulid_module.new().str}"


def build_correlation_id(*, trigger_type: str, resource_id: str) -> str:
    """Deterministic run identity for one (trigger type, external resource) pair."""
    type_part = _UNSAFE_PART_RE.sub("-", trigger_type.strip().lower()) or "event"
    digest = hashlib.sha256(f"{trigger_type}::{resource_id}".encode("utf-8")).hexdigest()
    return f"{type_part}:{digest[:24]}"
