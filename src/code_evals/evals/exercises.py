"""Exercise catalog on top of an exercises checkout.

Layout: ``<root>/<language>/<exercise>/`` holds one exercise workspace and
``<root>/prompts/<language>.md`` holds the agent prompt for that language.
"""

from __future__ import annotations

from pathlib import Path

SUPPORTED_LANGUAGES: tuple[str, ...] = ("go", "java", "javascript", "python", "rust")


class ExerciseCatalog:
    """Read-only view of the exercises checkout."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def exists(self) -> bool:
        return self.root.is_dir()

    def exercises(self, language: str) -> list[str]:
        validate_language(language)
        language_dir = self.root / language
        if not language_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in language_dir.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def all_exercises(self) -> dict[str, list[str]]:
        return {language: self.exercises(language) for language in SUPPORTED_LANGUAGES}

    def workspace(self, language: str, exercise: str) -> Path:
        return (self.root / language / exercise).resolve()

    def prompt(self, language: str) -> str:
        return (self.root / "prompts" / f"{language}.md").read_text("utf-8")


def validate_language(language: str) -> str:
    normalized = language.strip().lower()
    if normalized not in SUPPORTED_LANGUAGES:
        raise ValueError(
            f"Language is invalid: {language!r}. Expected one of: {', '.join(SUPPORTED_LANGUAGES)}",
        )
    return normalized


def parse_task_path(value: str) -> tuple[str, str]:
    """Split ``<language>/<exercise>`` into its parts."""

    language, _, exercise = value.strip().strip("/").partition("/")
    if not language or not exercise or "/" in exercise:
        raise ValueError(f"Invalid exercise path: {value!r}. Expected '<language>/<exercise>'.")
    return validate_language(language), exercise
