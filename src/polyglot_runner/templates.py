"""Starter programs shown to users who open an empty editor."""

from __future__ import annotations

from .execution.types import Language

STARTER_TEMPLATES: dict[Language, str] = {
    Language.C: (
        "#include <stdio.h>\n"
        "\n"
        "int main() {\n"
        '    printf("Hello, World!\\n");\n'
        "    return 0;\n"
        "}\n"
    ),
    Language.CPP: (
        "#include <iostream>\n"
        "using namespace std;\n"
        "\n"
        "int main() {\n"
        '    cout << "Hello, World!" << endl;\n'
        "    return 0;\n"
        "}\n"
    ),
    Language.JAVA: (
        "public class Main {\n"
        "    public static void main(String[] args) {\n"
        '        System.out.println("Hello, World!");\n'
        "    }\n"
        "}\n"
    ),
    Language.PYTHON: 'print("Hello, World!")\n',
}


def starter_template(language: str | Language) -> str:
    """Return the hello-world program for `language`.

    Raises ValueError for unsupported languages.

    Example:
        ```python
        print(starter_template("java"))
        ```
    """
    return STARTER_TEMPLATES[Language(language)]
