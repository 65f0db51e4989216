from __future__ import annotations

import functools
import re
from dataclasses import dataclass

from .execution.types import FailureKind, Language
from .policy import RunnerPolicy

EMPTY_CODE_MESSAGE = "Empty code provided"


@dataclass(frozen=True, slots=True)
class Rejection:
    """Reason a request was refused before anything was written or spawned.

    Example:
        ```python
        rejection = Rejection(FailureKind.EMPTY_CODE, "Empty code provided")
        ```
    """

    kind: FailureKind
    message: str


@functools.lru_cache(maxsize=16)
def compile_deny_patterns(patterns: tuple[str, ...]) -> tuple[re.Pattern[str], ...]:
    """Compile deny-list regexes once per distinct pattern set.

    Example:
        ```python
        compiled = compile_deny_patterns((r"\\bsocket\\b",))
        ```
    """
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


def find_restricted_construct(source_code: str, patterns: tuple[str, ...]) -> str | None:
    """Return the first deny-listed text in `source_code`, if any.

    Example:
        ```python
        find_restricted_construct("import os", (r"\\bimport\\s+os\\b",))  # "import os"
        ```
    """
    for compiled in compile_deny_patterns(patterns):
        match = compiled.search(source_code)
        if match:
            return match.group(0)
    return None


def validate(language: str, source_code: str, policy: RunnerPolicy) -> Rejection | None:
    """Run the static pre-flight checks; return None when the request may run.

    Checks run in order and stop at the first failure: supported language,
    non-blank source, size limit, deny-list scan. The scan is a text
    heuristic applied to every language alike; it is not a sandbox.

    Example:
        ```python
        rejection = validate("python", "import os\\nprint(1)", RunnerPolicy())
        rejection.kind  # FailureKind.RESTRICTED_CONSTRUCT
        ```
    """
    try:
        Language(language)
    except ValueError:
        return Rejection(FailureKind.UNSUPPORTED_LANGUAGE, f"Unsupported language: {language!r}")

    if not source_code or not source_code.strip():
        return Rejection(FailureKind.EMPTY_CODE, EMPTY_CODE_MESSAGE)

    size = len(source_code.encode("utf-8"))
    if size > policy.max_source_bytes:
        return Rejection(
            FailureKind.PAYLOAD_TOO_LARGE,
            f"Payload too large: source is {size} bytes, limit is {policy.max_source_bytes} bytes",
        )

    construct = find_restricted_construct(source_code, tuple(policy.deny_patterns))
    if construct is not None:
        return Rejection(
            FailureKind.RESTRICTED_CONSTRUCT,
            f"Error: Restricted construct detected ({construct.strip()!r}). "
            "System modules and calls are not allowed for security reasons.",
        )
    return None
