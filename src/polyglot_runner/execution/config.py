from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from .types import Language

SOURCE_PLACEHOLDER = "{source}"
ARTIFACT_PLACEHOLDER = "{artifact}"
WORKDIR_PLACEHOLDER = "{workdir}"
ENTRY_PLACEHOLDER = "{entry}"


@dataclass(frozen=True, slots=True)
class ToolchainDescriptor:
    """Static description of how one language is built and run.

    Argv templates may contain `{source}`, `{artifact}`, `{workdir}` and
    `{entry}` placeholders which are substituted per workspace.

    Example:
        ```python
        descriptor = DEFAULT_DESCRIPTORS[Language.C]
        descriptor.compile_required  # True
        ```
    """

    language: Language
    display_name: str
    source_extension: str
    run_command: tuple[str, ...]
    compile_command: tuple[str, ...] | None = None
    artifact_name: str | None = None
    memory_limited: bool = True

    @property
    def compile_required(self) -> bool:
        """Return True when a compile step must precede execution.

        Example:
            ```python
            DEFAULT_DESCRIPTORS[Language.PYTHON].compile_required  # False
            ```
        """
        return self.compile_command is not None

    @property
    def compiler(self) -> str | None:
        """Return the compiler binary, if any.

        Example:
            ```python
            DEFAULT_DESCRIPTORS[Language.CPP].compiler  # "g++"
            ```
        """
        return self.compile_command[0] if self.compile_command else None

    @property
    def runtime(self) -> str | None:
        """Return the runtime binary, or None when the artifact runs directly.

        Example:
            ```python
            DEFAULT_DESCRIPTORS[Language.JAVA].runtime  # "java"
            ```
        """
        head = self.run_command[0]
        return None if "{" in head else head

    def with_binaries(self, *, compiler: str | None = None, runtime: str | None = None) -> "ToolchainDescriptor":
        """Return a copy with the compiler and/or runtime binary replaced.

        Example:
            ```python
            clang = DEFAULT_DESCRIPTORS[Language.C].with_binaries(compiler="clang")
            ```
        """
        compile_command = self.compile_command
        run_command = self.run_command
        if compiler is not None:
            if compile_command is None:
                raise ValueError(f"{self.display_name} has no compile step")
            compile_command = (compiler, *compile_command[1:])
        if runtime is not None:
            if self.runtime is None:
                raise ValueError(f"{self.display_name} runs its artifact directly")
            run_command = (runtime, *run_command[1:])
        return dataclasses.replace(
            self, compile_command=compile_command, run_command=run_command
        )


def render_command(template: tuple[str, ...], values: Mapping[str, str]) -> list[str]:
    """Substitute placeholders in an argv template.

    Each argument is formatted on its own, so values never split into extra
    arguments.

    Example:
        ```python
        argv = render_command(("python3", "{source}"), {"source": "/tmp/ws/main.py"})
        ```
    """
    return [arg.format_map(values) for arg in template]


DEFAULT_DESCRIPTORS: Mapping[Language, ToolchainDescriptor] = MappingProxyType(
    {
        Language.PYTHON: ToolchainDescriptor(
            language=Language.PYTHON,
            display_name="Python",
            source_extension=".py",
            run_command=("python3", "-I", "-u", SOURCE_PLACEHOLDER),
        ),
        Language.C: ToolchainDescriptor(
            language=Language.C,
            display_name="C",
            source_extension=".c",
            compile_command=(
                "gcc",
                "-std=c11",
                "-O2",
                "-o",
                ARTIFACT_PLACEHOLDER,
                SOURCE_PLACEHOLDER,
                "-lm",
            ),
            run_command=(ARTIFACT_PLACEHOLDER,),
            artifact_name="main",
        ),
        Language.CPP: ToolchainDescriptor(
            language=Language.CPP,
            display_name="C++",
            source_extension=".cpp",
            compile_command=(
                "g++",
                "-std=c++17",
                "-O2",
                "-o",
                ARTIFACT_PLACEHOLDER,
                SOURCE_PLACEHOLDER,
            ),
            run_command=(ARTIFACT_PLACEHOLDER,),
            artifact_name="main",
        ),
        # The JVM reserves far more address space than it uses, so no RLIMIT_AS.
        Language.JAVA: ToolchainDescriptor(
            language=Language.JAVA,
            display_name="Java",
            source_extension=".java",
            compile_command=(
                "javac",
                "-encoding",
                "UTF-8",
                "-d",
                WORKDIR_PLACEHOLDER,
                SOURCE_PLACEHOLDER,
            ),
            run_command=(
                "java",
                "-XX:+UseSerialGC",
                "-Dfile.encoding=UTF-8",
                "-cp",
                WORKDIR_PLACEHOLDER,
                ENTRY_PLACEHOLDER,
            ),
            memory_limited=False,
        ),
    }
)


def descriptors_from_overrides(overrides: Mapping[str, Mapping[str, str]]) -> dict[Language, ToolchainDescriptor]:
    """Apply `[policy.toolchains]` binary overrides to the default descriptors.

    Example:
        ```python
        table = descriptors_from_overrides({"c": {"compiler": "clang"}})
        ```
    """
    out = dict(DEFAULT_DESCRIPTORS)
    for name, entry in overrides.items():
        try:
            language = Language(name)
        except ValueError as exc:
            raise ValueError(f"Unknown toolchain language '{name}'") from exc
        out[language] = out[language].with_binaries(
            compiler=entry.get("compiler"), runtime=entry.get("runtime")
        )
    return out
