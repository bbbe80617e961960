"""Brand/branch normalization and the listing match heuristic."""
from __future__ import annotations

import re

_WHITESPACE_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


def normalize_brand(text: str) -> str:
    # Whitespace only; punctuation is kept.
    return _WHITESPACE_RE.sub("", (text or "").lower())


def normalize_branch(text: str) -> str:
    # "St. Johns" and "St Johns" both become "stjohns".
    return _NON_ALNUM_RE.sub("", (text or "").lower())


def normalize_listing_title(title: str) -> str:
    return normalize_brand(title)


def is_brand_match(normalized_title: str, normalized_brand: str, normalized_branch: str) -> bool:
    """Both tokens must appear somewhere in the title, in any order."""
    return normalized_brand in normalized_title and normalized_branch in normalized_title


class BrandSignature:
    """Pre-normalized brand/branch pair tested against many listing titles."""

    def __init__(self, brand_name: str, branch_name: str) -> None:
        self.brand_name = brand_name
        self.branch_name = branch_name
        self.brand = normalize_brand(brand_name)
        self.branch = normalize_branch(branch_name)

    def matches(self, title: str) -> bool:
        return is_brand_match(normalize_listing_title(title), self.brand, self.branch)

    def __repr__(self) -> str:
        return f"BrandSignature(brand={self.brand!r}, branch={self.branch!r})"
