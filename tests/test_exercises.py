from __future__ import annotations

from pathlib import Path

import allure
import pytest

from code_evals.evals.exercises import (
    SUPPORTED_LANGUAGES,
    ExerciseCatalog,
    parse_task_path,
    validate_language,
)

pytestmark = [allure.epic("Run Orchestration"), allure.feature("Exercise Catalog")]


def test_exercises_are_sorted_and_skip_hidden(exercises_root: Path) -> None:
    (exercises_root / "python" / "aaa-notes.md").write_text("not a dir", "utf-8")
    catalog = ExerciseCatalog(exercises_root)

    assert catalog.exists()
    assert catalog.exercises("python") == ["alpha", "beta"]
    assert catalog.exercises("rust") == []
    assert set(catalog.all_exercises()) == set(SUPPORTED_LANGUAGES)


def test_prompt_and_workspace_paths(exercises_root: Path) -> None:
    catalog = ExerciseCatalog(exercises_root)

    assert catalog.prompt("go") == "Solve the go exercise."
    assert catalog.workspace("go", "hello") == (exercises_root / "go" / "hello").resolve()


def test_missing_prompt_raises(exercises_root: Path) -> None:
    with pytest.raises(FileNotFoundError):
        ExerciseCatalog(exercises_root).prompt("rust")


def test_language_is_normalized() -> None:
    assert validate_language(" Python ") == "python"
    with pytest.raises(ValueError, match="Language is invalid"):
        validate_language("cobol")


@pytest.mark.parametrize(
    ("value", "expected"),
    [("python/alpha", ("python", "alpha")), ("/Go/hello/", ("go", "hello"))],
)
def test_task_path_parsing(value: str, expected: tuple[str, str]) -> None:
    assert parse_task_path(value) == expected


@pytest.mark.parametrize("value", ["python", "python/", "python/a/b", "cobol/x"])
def test_task_path_rejects_malformed_values(value: str) -> None:
    with pytest.raises(ValueError):
        parse_task_path(value)
