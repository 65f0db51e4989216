from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_FALLBACK_DENY_PATTERNS = [
    r"\b(?:import|from)\s+(?:os|sys)\b",
    r"\bsubprocess\b",
    r"\bshutil\b",
    r"\bsocket\b",
    r"\bimportlib\b",
    r"__import__",
    r"\bexec\s*\(",
    r"\beval\s*\(",
    r"\bopen\s*\(",
    r"\bsystem\s*\(",
    r"\bpopen\s*\(",
    r"\bfork\s*\(",
    r"\bkill\s*\(",
    r"\bchmod\s*\(",
    r"\bchown\s*\(",
]


def _default_policy_path() -> Path:
    """Return bundled default policy TOML path.

    Example:
        ```python
        path = _default_policy_path()
        ```
    """
    return Path(__file__).with_name("default_policy.toml")


def _read_policy_toml(path: Path) -> dict[str, Any]:
    """Read policy TOML and return normalized policy dictionary.

    Example:
        ```python
        raw = _read_policy_toml(Path("/tmp/policy.toml"))
        ```
    """
    if not path.exists():
        return {
            "timeout_seconds": 10,
            "max_source_bytes": 10240,
            "memory_limit_mb": 256,
            "max_output_kb": 128,
            "file_size_limit_mb": 16,
            "run_as_user": "nobody",
            "search_path": "/usr/local/bin:/usr/bin:/bin",
            "workspace_dir": "",
            "deny_patterns": list(_FALLBACK_DENY_PATTERNS),
            "toolchains": {},
        }
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    policy_obj = raw.get("policy", raw)
    if not isinstance(policy_obj, dict):
        raise ValueError("Policy config must be a TOML table")
    return policy_obj


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings policy field.

    Example:
        ```python
        patterns = _list_of_str([r"\\bsocket\\b"], "deny_patterns")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


def _toolchain_overrides(value: Any) -> dict[str, dict[str, str]]:
    """Validate the `[policy.toolchains.<language>]` tables.

    Example:
        ```python
        overrides = _toolchain_overrides({"c": {"compiler": "clang"}})
        ```
    """
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("'toolchains' must be a TOML table")
    out: dict[str, dict[str, str]] = {}
    for language, table in value.items():
        if not isinstance(table, dict):
            raise ValueError(f"'toolchains.{language}' must be a TOML table")
        entry: dict[str, str] = {}
        for key, binary in table.items():
            if key not in {"compiler", "runtime"}:
                raise ValueError(f"'toolchains.{language}' has unknown key '{key}'")
            if not isinstance(binary, str) or not binary.strip():
                raise ValueError(f"'toolchains.{language}.{key}' must be a non-empty string")
            entry[key] = binary.strip()
        out[str(language)] = entry
    return out


_DEFAULT_POLICY_RAW = _read_policy_toml(_default_policy_path())
DEFAULT_TIMEOUT_SECONDS = int(_DEFAULT_POLICY_RAW.get("timeout_seconds", 10))
DEFAULT_MAX_SOURCE_BYTES = int(_DEFAULT_POLICY_RAW.get("max_source_bytes", 10240))
DEFAULT_MEMORY_LIMIT_MB = int(_DEFAULT_POLICY_RAW.get("memory_limit_mb", 256))
DEFAULT_MAX_OUTPUT_KB = int(_DEFAULT_POLICY_RAW.get("max_output_kb", 128))
DEFAULT_FILE_SIZE_LIMIT_MB = int(_DEFAULT_POLICY_RAW.get("file_size_limit_mb", 16))
DEFAULT_RUN_AS_USER = str(_DEFAULT_POLICY_RAW.get("run_as_user", ""))
DEFAULT_SEARCH_PATH = str(
    _DEFAULT_POLICY_RAW.get("search_path", "/usr/local/bin:/usr/bin:/bin")
)
DEFAULT_WORKSPACE_DIR = str(_DEFAULT_POLICY_RAW.get("workspace_dir", ""))
DEFAULT_DENY_PATTERNS = _list_of_str(
    _DEFAULT_POLICY_RAW.get("deny_patterns", _FALLBACK_DENY_PATTERNS), "deny_patterns"
)
DEFAULT_TOOLCHAINS = _toolchain_overrides(_DEFAULT_POLICY_RAW.get("toolchains", {}))


@dataclass(slots=True)
class RunnerPolicy:
    """Limits and guardrails applied to every execution request.

    Example:
        ```python
        policy = RunnerPolicy(timeout_seconds=5, run_as_user="")
        ```
    """

    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    max_source_bytes: int = DEFAULT_MAX_SOURCE_BYTES
    memory_limit_mb: int = DEFAULT_MEMORY_LIMIT_MB
    max_output_kb: int = DEFAULT_MAX_OUTPUT_KB
    file_size_limit_mb: int = DEFAULT_FILE_SIZE_LIMIT_MB
    run_as_user: str = DEFAULT_RUN_AS_USER
    search_path: str = DEFAULT_SEARCH_PATH
    workspace_dir: str = DEFAULT_WORKSPACE_DIR
    deny_patterns: list[str] = field(default_factory=lambda: DEFAULT_DENY_PATTERNS.copy())
    toolchains: dict[str, dict[str, str]] = field(
        default_factory=lambda: {key: dict(value) for key, value in DEFAULT_TOOLCHAINS.items()}
    )
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate numeric limits and deny patterns after initialization.

        Example:
            ```python
            RunnerPolicy(timeout_seconds=10)
            ```
        """
        for name in (
            "timeout_seconds",
            "max_source_bytes",
            "memory_limit_mb",
            "max_output_kb",
            "file_size_limit_mb",
        ):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"'{name}' must be a positive integer")
        for pattern in self.deny_patterns:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid deny pattern {pattern!r}: {exc}") from exc

    @property
    def max_output_bytes(self) -> int:
        """Return the combined stdout/stderr budget in bytes.

        Example:
            ```python
            RunnerPolicy(max_output_kb=1).max_output_bytes  # 1024
            ```
        """
        return int(self.max_output_kb) * 1024

    @classmethod
    def from_file(cls, config_path: str) -> "RunnerPolicy":
        """Create a policy instance from a TOML file.

        Keys missing from the file fall back to the bundled defaults.

        Example:
            ```python
            policy = RunnerPolicy.from_file("/etc/polyglot-runner/policy.toml")
            ```
        """
        raw = _read_policy_toml(Path(config_path))
        toolchains = {key: dict(value) for key, value in DEFAULT_TOOLCHAINS.items()}
        for language, entry in _toolchain_overrides(raw.get("toolchains", {})).items():
            toolchains.setdefault(language, {}).update(entry)
        return cls(
            timeout_seconds=int(raw.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
            max_source_bytes=int(raw.get("max_source_bytes", DEFAULT_MAX_SOURCE_BYTES)),
            memory_limit_mb=int(raw.get("memory_limit_mb", DEFAULT_MEMORY_LIMIT_MB)),
            max_output_kb=int(raw.get("max_output_kb", DEFAULT_MAX_OUTPUT_KB)),
            file_size_limit_mb=int(
                raw.get("file_size_limit_mb", DEFAULT_FILE_SIZE_LIMIT_MB)
            ),
            run_as_user=str(raw.get("run_as_user", DEFAULT_RUN_AS_USER)),
            search_path=str(raw.get("search_path", DEFAULT_SEARCH_PATH)),
            workspace_dir=str(raw.get("workspace_dir", DEFAULT_WORKSPACE_DIR)),
            deny_patterns=_list_of_str(
                raw.get("deny_patterns", DEFAULT_DENY_PATTERNS), "deny_patterns"
            ),
            toolchains=toolchains,
            config_path=config_path,
        )
