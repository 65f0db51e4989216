from __future__ import annotations

import shutil
from dataclasses import dataclass
from typing import Mapping

from .config import ToolchainDescriptor
from .types import Language


@dataclass(frozen=True, slots=True)
class ToolchainCapabilities:
    """Whether the host can build and run one language.

    Example:
        ```python
        caps = ToolchainCapabilities(Language.C, "gcc", None, True, True)
        ```
    """

    language: Language
    compiler: str | None
    runtime: str | None
    compiler_available: bool
    runtime_available: bool

    @property
    def available(self) -> bool:
        """Return True when every binary the language needs was found.

        Example:
            ```python
            caps.available
            ```
        """
        return self.compiler_available and self.runtime_available


def _found(binary: str | None, search_path: str) -> bool:
    """Return True when `binary` is absent (not needed) or resolvable.

    Example:
        ```python
        _found("gcc", "/usr/bin:/bin")
        ```
    """
    if binary is None:
        return True
    return shutil.which(binary, path=search_path) is not None


def capabilities_for_language(descriptor: ToolchainDescriptor, search_path: str) -> ToolchainCapabilities:
    """Probe the host for the binaries a descriptor needs.

    Lookups use the same search path the child processes get.

    Example:
        ```python
        caps = capabilities_for_language(DEFAULT_DESCRIPTORS[Language.JAVA], "/usr/bin:/bin")
        ```
    """
    return ToolchainCapabilities(
        language=descriptor.language,
        compiler=descriptor.compiler,
        runtime=descriptor.runtime,
        compiler_available=_found(descriptor.compiler, search_path),
        runtime_available=_found(descriptor.runtime, search_path),
    )


def toolchain_report(
    descriptors: Mapping[Language, ToolchainDescriptor],
    search_path: str,
) -> list[ToolchainCapabilities]:
    """Return capabilities for every registered language, in enum order.

    Example:
        ```python
        report = toolchain_report(DEFAULT_DESCRIPTORS, "/usr/local/bin:/usr/bin:/bin")
        ```
    """
    return [capabilities_for_language(descriptors[language], search_path) for language in Language]
