"""
Interpreter configuration and named profiles.

    cfg = InterpreterConfig.from_profile("legacy", max_steps=500)
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, fields

log = logging.getLogger(__name__)

RETURN_RESOLUTIONS = ("frame", "cache")


# ──────────────────────────────────────────────
# Profiles
# ──────────────────────────────────────────────

PROFILES = {
    "default": {
        "base_address": 0x1000,
        "entry_function": "main",
        "max_call_depth": 256,
        "max_steps": 100_000,
        "return_resolution": "frame",
        "description": "Per-frame call continuations, 256 nested calls",
    },
    "legacy": {
        "base_address": 0x1000,
        "entry_function": "main",
        "max_call_depth": 256,
        "max_steps": 100_000,
        "return_resolution": "cache",
        "description": "Calls inside expressions read the last-return cache",
    },
    "deep": {
        "base_address": 0x1000,
        "entry_function": "main",
        "max_call_depth": 4096,
        "max_steps": 5_000_000,
        "return_resolution": "frame",
        "description": "Deep recursion and long-running loops",
    },
}


@dataclass
class InterpreterConfig:
    base_address: int = 0x1000
    entry_function: str = "main"
    max_call_depth: int = 256
    max_steps: int = 100_000
    return_resolution: str = "frame"
    profile: str = "default"

    def __post_init__(self):
        if self.return_resolution not in RETURN_RESOLUTIONS:
            raise ValueError(f"return_resolution must be one of {RETURN_RESOLUTIONS}, "
                             f"got {self.return_resolution!r}")
        if self.max_call_depth < 1:
            raise ValueError("max_call_depth must be at least 1")

    @property
    def uses_continuations(self) -> bool:
        return self.return_resolution == "frame"

    @classmethod
    def from_profile(cls, name: str = "default", **overrides) -> "InterpreterConfig":
        """Build a config from a named profile; unknown names fall back to 'default'."""
        if name not in PROFILES:
            log.warning("Unknown profile %r, using 'default'", name)
            name = "default"
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in PROFILES[name].items() if k in known}
        values.update({k: v for k, v in overrides.items() if v is not None})
        values["profile"] = name
        return cls(**values)
