from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

BackendName = Literal["claude", "codex", "codex_sdk"]
MergeMethod = Literal["squash", "merge", "rebase"]

DEFAULT_CONFIG_PATH = ".chaos/framework/order/config.toml"


@dataclass(slots=True)
class ProjectConfig:
    trunk: str = "main"
    remote: str = "origin"
    branch_prefix: str = "order/"
    source_dirs: list[str] = field(default_factory=lambda: ["src", "tests"])
    specs_dir: str = "docs/specs"
    roadmap_file: str = "ROADMAP.md"


@dataclass(slots=True)
class PathsConfig:
    state_dir: str = ".chaos/framework/order"
    state_file: str = "state.json"
    queue_file: str = "queue.txt"
    kill_switch: str = "STOP"
    handoffs_dir: str = "handoffs"


@dataclass(slots=True)
class SafetyConfig:
    """Run-wide budgets. ``None`` means no limit."""

    max_iterations: int | None = None
    max_hours: float | None = None
    max_consecutive_failures: int | None = None
    max_open_prs: int | None = None


@dataclass(slots=True)
class CIConfig:
    poll_timeout_seconds: float = 1800.0
    poll_interval_seconds: float = 30.0
    settle_seconds: float = 10.0
    # When false, a PR with no registered checks counts as passed until a push
    # is made on a PR that had checks.
    require_checks: bool = False


@dataclass(slots=True)
class MergeConfig:
    method: MergeMethod = "squash"
    delete_branch: bool = True


@dataclass(slots=True)
class ReviewConfig:
    max_fix_attempts: int = 3
    max_feedback_rounds: int = 2


@dataclass(slots=True)
class SpecConfig:
    max_revisions: int = 3


@dataclass(slots=True)
class ExecutorConfig:
    model: str = "opus"
    timeout_seconds: float = 7200.0


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class HostConfig:
    max_retries: int = 2
    retry_backoff_seconds: float = 2.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


_SECTIONS: dict[str, type] = {
    "project": ProjectConfig,
    "paths": PathsConfig,
    "safety": SafetyConfig,
    "ci": CIConfig,
    "merge": MergeConfig,
    "review": ReviewConfig,
    "spec": SpecConfig,
    "executor": ExecutorConfig,
    "backend": BackendConfig,
    "host": HostConfig,
    "logging": LoggingConfig,
}


def _build_section(name: str, data: dict[str, Any]) -> Any:
    section_cls = _SECTIONS[name]
    payload = data.get(name, {})
    if not isinstance(payload, dict):
        raise ValueError(f"Config section [{name}] must be a table.")
    known = {item.name for item in fields(section_cls)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ValueError(f"Unknown keys in config section [{name}]: {', '.join(unknown)}")
    return section_cls(**payload)


@dataclass(slots=True)
class OrderConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    ci: CIConfig = field(default_factory=CIConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    spec: SpecConfig = field(default_factory=SpecConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    host: HostConfig = field(default_factory=HostConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> OrderConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> OrderConfig:
        return cls(**{name: _build_section(name, data) for name in _SECTIONS})

    def to_dict(self) -> dict:
        return {name: asdict(getattr(self, name)) for name in _SECTIONS}

    def state_dir(self, repo_root: Path) -> Path:
        return repo_root / self.paths.state_dir

    def state_path(self, repo_root: Path) -> Path:
        return self.state_dir(repo_root) / self.paths.state_file

    def queue_path(self, repo_root: Path) -> Path:
        return self.state_dir(repo_root) / self.paths.queue_file

    def kill_switch_path(self, repo_root: Path) -> Path:
        return self.state_dir(repo_root) / self.paths.kill_switch

    def handoffs_path(self, repo_root: Path) -> Path:
        return self.state_dir(repo_root) / self.paths.handoffs_dir


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: OrderConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in _SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            # TOML has no null; an unset limit is simply left out.
            if value is None:
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> OrderConfig:
    if not path.exists():
        return OrderConfig.default()
    return OrderConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: OrderConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
