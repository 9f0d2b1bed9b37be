from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .backup_log import DEFAULT_BACKUP_DIR
from .logging_utils import DEFAULT_LOG_PATH, parse_log_level

DEFAULT_PRECOMPILED_DIR = "/usr/share/nvidia/precompiled"
DEFAULT_PROC_MOUNT_POINT = "/proc"
DEFAULT_REQUIRED_FILES = ["nv-linux.o"]


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to JSON for unknown extensions.
    return "json"


@dataclass(frozen=True)
class InstallerConfig:
    raw: Dict[str, Any] = field(default_factory=dict)

    def _section(self, name: str) -> Dict[str, Any]:
        return self.raw.get(name) or {}

    @property
    def backup_dir(self) -> str:
        return str(self._section("paths").get("backup_dir") or DEFAULT_BACKUP_DIR)

    @property
    def log_path(self) -> str:
        return str(self._section("paths").get("log_path") or DEFAULT_LOG_PATH)

    @property
    def log_level(self) -> int:
        return parse_log_level(str(self._section("logging").get("level") or "info"))

    @property
    def precompiled_dir(self) -> str:
        return str(self._section("precompiled").get("directory") or DEFAULT_PRECOMPILED_DIR)

    @property
    def required_files(self) -> List[str]:
        files = self._section("precompiled").get("required_files")
        if files is None:
            return list(DEFAULT_REQUIRED_FILES)
        return [str(f) for f in files]

    @property
    def proc_mount_point(self) -> str:
        return str(self._section("kernel").get("proc_mount_point") or DEFAULT_PROC_MOUNT_POINT)

    def with_overrides(self, **paths: Any) -> "InstallerConfig":
        """Copy with non-None ``paths`` entries (backup_dir, log_path) replaced."""
        raw = dict(self.raw)
        section = dict(raw.get("paths") or {})
        section.update({k: v for k, v in paths.items() if v is not None})
        raw["paths"] = section
        return InstallerConfig(raw=raw)


def load_config(path: str | None) -> InstallerConfig:
    """Load installer settings from JSON or YAML; a missing file means defaults."""

    if not path:
        return InstallerConfig()
    p = Path(path)
    if not p.exists():
        return InstallerConfig()

    text = p.read_text(encoding="utf-8")
    if _detect_format(p) in {"yaml", "yml"}:
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text) if text.strip() else {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file must be an object/dict, got {type(data).__name__}")

    for section in ("paths", "logging", "precompiled", "kernel"):
        if section in data and not isinstance(data[section], dict):
            raise ValueError(f"Config section '{section}' must be a mapping")

    return InstallerConfig(raw=data)
