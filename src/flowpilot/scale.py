from __future__ import annotations

import re
from enum import Enum

FILE_PATH_PATTERN = re.compile(
    r"(?<![\w/.-])(?:[\w.-]+/)*[\w-]+\.(?:py|pyi|ts|tsx|js|jsx|mjs|go|rs|java|kt|rb|php|"
    r"cs|swift|c|h|cpp|hpp|vue|svelte|css|scss|html|sql|md|json|ya?ml|toml)\b"
)

SMALL_MAX_FILES = 2
MEDIUM_MAX_FILES = 5


class ScaleClass(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


def classify(file_count_estimate: int) -> ScaleClass:
    """Map an affected-file estimate to a scale class.

    Zero counts as small: nothing is known to be touched yet. Anything above
    the medium band is large, so an inflated estimate errs toward more ceremony.
    """
    if isinstance(file_count_estimate, bool) or not isinstance(file_count_estimate, int):
        raise TypeError(
            f"File count estimate must be an integer, got {type(file_count_estimate).__name__}."
        )
    if file_count_estimate < 0:
        raise ValueError(f"File count estimate must be non-negative, got {file_count_estimate}.")
    if file_count_estimate <= SMALL_MAX_FILES:
        return ScaleClass.SMALL
    if file_count_estimate <= MEDIUM_MAX_FILES:
        return ScaleClass.MEDIUM
    return ScaleClass.LARGE


def estimate_file_count(text: str) -> int:
    """Count distinct file paths mentioned in free text."""
    return len({match.group(0) for match in FILE_PATH_PATTERN.finditer(text)})
